"""Version information for promoter."""

__version__ = "0.1.0"
