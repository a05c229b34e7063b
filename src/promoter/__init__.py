"""Promoter - Deployment Promotion & Rollback Controller.

Moves an immutable container image through staging and production,
gated by health verification and manual approval, with automatic
rollback when production verification fails.
"""

from promoter.version import __version__


__all__ = ["__version__"]
