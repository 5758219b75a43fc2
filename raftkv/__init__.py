"""An in-process Raft cluster replicating a string key-value store, with a demo command."""

__version__ = "0.1.0"
__all__ = ["__version__"]