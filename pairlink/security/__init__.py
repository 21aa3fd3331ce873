"""HTTP security layer: CORS, rate limiting and API key auth."""
