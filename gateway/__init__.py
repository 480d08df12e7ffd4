"""Plugin Gateway: routes, meters and lists drop-in API plugins."""

__version__ = "0.1.0"
