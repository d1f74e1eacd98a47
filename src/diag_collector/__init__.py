"""Diagnostic collection for clusters of coordinator and executor nodes."""

from diag_collector.__version__ import __version__

__all__ = ["__version__"]
