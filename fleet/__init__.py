"""Browser-automation fleet coordinator."""

__version__ = "0.1.0"
