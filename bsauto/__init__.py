"""B & S Auto Sales inventory and lead API."""

__version__ = "1.0.0"
