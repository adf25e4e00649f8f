"""A TCP task cluster: load-balancing manager, node agents and a task client."""

__version__ = "0.1.0"
__all__ = ["__version__"]