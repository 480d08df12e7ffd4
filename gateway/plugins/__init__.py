"""System plugins that ship with the gateway. Each module is one API."""
