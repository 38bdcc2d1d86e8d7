"""
CreatorScope - creator discovery and 30-day metrics pipelines.

Runs long, unreliable scraping jobs on an external actor API to completion
while streaming live, cancellable progress to the client that started them.

Key pieces:
- Retry with exponential backoff, a shared circuit breaker and per-call
  deadlines around every external call (`creatorscope.core`)
- Immutable pipeline state machines polled through a registry
- Server-Sent Events progress protocol with disconnect-as-cancel
  (`creatorscope.streaming`)

API Server:
    $ creatorscope --port 8000
    # or
    $ uvicorn creatorscope.api.server:app --host 0.0.0.0 --port 8000

    $ curl http://localhost:8000/health | jq .
    {
      "status": "healthy",
      "circuit_breaker": {"name": "scraper", "state": "closed", ...}
    }

Configuration:
    - CS_SCRAPER__API_TOKEN=... (job API token)
    - CS_RESILIENCE__MAX_RETRIES=3
    - CS_OBSERVABILITY__LOG_LEVEL=INFO
"""

__version__ = "0.1.0"
__author__ = "CreatorScope Team"

__all__ = ["__version__"]
