"""Application service helpers."""

from .presence import PresenceMirror
from .realtime import RealtimeHub, build_transport

__all__ = [
    "PresenceMirror",
    "RealtimeHub",
    "build_transport",
]
