"""Session and workspace manager for remote coding-agent clients."""

__version__ = "0.1.0"

__all__ = ["__version__"]
