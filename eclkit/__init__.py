"""Read, inspect and rebuild compiled ECL enemy scripts of the th10 format family."""

__version__ = "0.1.0"