"""loreweave: fact extraction and storage for fictional worlds."""

__all__ = ["__version__"]

__version__ = "0.1.0"
