"""Application service helpers."""

from .realtime import build_realtime

__all__ = ["build_realtime"]
