# Middleware package init
"""
TimeSync Backend — Middleware Package
=======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    1. Rate Limit first: reject abusive polling before any database work
    2. Request ID: correlation id for every log line of the sync call
    3. Logging: method, path, status and duration with the request id

    Responses pass back through the chain in reverse, so the request id is
    on the response headers and the access log sees the final status.
"""
