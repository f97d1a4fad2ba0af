"""Delivery, presence and call metrics exported at ``/metrics``."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
