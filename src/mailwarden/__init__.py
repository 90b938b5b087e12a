"""mailwarden: restricted Gmail access for automated agents."""

__version__ = "0.1.0"
