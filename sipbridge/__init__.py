"""SIP bridge building blocks: URIs and header mapping, call metrics, call registry and transfers."""

__version__ = "0.0.1"
__all__ = ["types", "stats", "service"]