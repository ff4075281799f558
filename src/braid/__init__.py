"""braid: dependency-ordered agent task execution and branch integration."""

__version__ = "0.3.0"
