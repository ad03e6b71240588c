"""
Proxy Package
=============

This package implements the forwarding pipeline between browser/SDK clients
and attested inference enclaves.

Main Components:
----------------
- routes.py: FastAPI router with the proxied endpoint
- headers.py: Header allowlists and curation in both directions
- cors.py: CORS headers and preflight handling
- upstream.py: Upstream resolution, credential injection, forwarding
- streaming.py: Flush-per-write and bulk response delivery
- cancellation.py: Per-request cancellation bound to the client connection

Usage:
------
    from enclave_proxy.proxy import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
