# Routes package init
"""
TimeSync Backend — API Routes Package
=======================================

What:  HTTP route handlers that accept requests and return responses.

Route Inventory:
    - sync.py:     POST /sync                          (push changes, pull delta)
                   GET  /sync                          (pull delta only)
    - records.py:  GET  /api/records/{kind}/{id}       (single record state)
    - health.py:   GET  /health                        (service health check)
                   GET  /                              (service banner)

Routes are thin: they parse the request, call the Sync Coordinator or the
Record Store, and return the response model. Errors are translated to HTTP
by the global exception handlers in main.py.
"""
