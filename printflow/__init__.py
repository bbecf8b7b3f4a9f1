"""Print-on-demand commerce core."""

__version__ = "1.0.0"
