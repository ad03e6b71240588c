"""
Enclave Proxy
=============

Streaming reverse proxy that forwards chat completion requests to an attested
inference enclave, injecting a server-held API key and passing the EHBP
encryption headers through unchanged.
"""

__version__ = "1.0.0"
