"""termbench - terminal SQL client core."""

__version__ = "0.1.0"
