"""File-backed persistence for workboard records."""

from .container import Container
from .bootstrap import ensure_state_root

__all__ = ["Container", "ensure_state_root"]
