"""Stone-slab inventory record lifecycle core."""

__version__ = "1.0.0"
