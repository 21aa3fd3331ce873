"""pairlink — brokers phone-number identities onto a headless messaging web client.

Subpackages:
- sessions: identity normalization, session registry, lifecycle controller
- storage: per-session resource directories and the JSON record store
- backends: the adapter contract and the default browser-driven adapter
- api: FastAPI route handlers
- security: CORS, rate limiting, API key middleware
"""

__version__ = "0.1.0"
