"""
Edge cache worker package for the Pratibha Marketing web core.

Sits between pages and the origin and decides, per request, whether to
answer from a named cache store or the network:
- Network-first for documents, with an offline page as last resort
- Cache-first for content-hashed assets
- Stale-while-revalidate for other static files
- Network-first with a bounded fallback cache for a short API allow-list

Structure:
- app.caching: routing, strategies, cache storage backends, lifecycle.
- app.main: FastAPI edge host exposing the worker over HTTP.
"""
