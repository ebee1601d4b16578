"""brokerlease - exclusive broker mastership through a shared database lease."""

__version__ = "0.1.0"
