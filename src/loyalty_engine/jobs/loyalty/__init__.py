"""Loyalty job exports."""

from .expiration import run_point_expiration_sweep  # noqa: F401

__all__ = ["run_point_expiration_sweep"]
