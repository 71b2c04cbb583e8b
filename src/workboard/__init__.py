"""Provide the public `workboard` package exports."""

from __future__ import annotations

from .services import Services, build_services

__version__ = "1.0.0"

__all__ = ["Services", "build_services", "__version__"]
