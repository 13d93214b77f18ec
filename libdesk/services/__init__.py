"""libdesk - services package

Service modules for infrastructure and external integrations:
- Cache management (Redis with in-memory fallback)
- HTTP client abstraction
- Live notification hub (WebSocket)
- E-mail delivery
- Book cover storage
"""
