"""HTTP surface for the session broker."""
