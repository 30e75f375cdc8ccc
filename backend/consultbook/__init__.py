"""consultbook: consultant booking and payment settlement backend."""

__version__ = "1.0.0"
