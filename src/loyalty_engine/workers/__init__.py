"""Background workers supporting async processing."""

from .expiration import PointExpirationWorker

__all__ = ["PointExpirationWorker"]
