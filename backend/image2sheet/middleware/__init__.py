# Middleware package init
"""
Image2Sheet Backend — Middleware Package
=========================================

What:  Cross-cutting concerns applied to every request, plus the bearer
       token dependencies used by protected routes.

Middleware Chain (outermost first, as registered in main.create_app):
    Request → [GZip] → [CORS] → [Request ID] → [Logging] → [Rate Limit] → Route Handler

    - Request ID runs before logging so every access log line carries it
    - The rate limiter sits innermost so throttled requests are still
      logged with their request id
    - /health is never throttled and never access-logged

Auth (auth.py):
    get_current_user   → 401 unless a valid application JWT is presented
    get_optional_user  → None for anonymous or invalid tokens
"""
