"""Prometheus-format metrics exported by the Parley backend."""

from . import metrics
from .registry import registry

__all__ = ["metrics", "registry"]
