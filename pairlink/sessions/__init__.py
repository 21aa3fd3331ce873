"""Per-identity linking sessions: registry, state machine and lifecycle controller."""
