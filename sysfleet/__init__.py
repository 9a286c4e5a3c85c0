"""Fleet orchestration for multi-instance bot hosts."""

__version__ = "0.1.0"
