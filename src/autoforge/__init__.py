"""Self-healing test and deployment orchestration for generated web applications."""

from autoforge._version import __version__

__all__ = ["__version__"]
