"""Storage for distributed transactions, branches and key-value topics, with file and Redis back ends."""

__version__ = "0.1.0"

__all__ = ["__version__"]