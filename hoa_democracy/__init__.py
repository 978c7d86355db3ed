"""HOA democracy service: community polls backed by per-poll vote hash chains."""

__version__ = "0.1.0"

__all__ = ["__version__"]
