"""
UCP commerce server.

Lets AI agents run checkouts against a commerce backend over the Universal
Commerce Protocol: REST checkout sessions, an MCP tool surface, payment
handlers and signed order webhooks.
"""

__version__ = "1.0.0"

SERVER_NAME = "ucp-commerce"
UCP_VERSION = "2026-01-11"

__all__ = ["SERVER_NAME", "UCP_VERSION", "__version__"]
