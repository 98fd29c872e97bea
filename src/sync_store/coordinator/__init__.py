"""Run coordination helpers for the publisher (progress delivery)."""

from .progress import ProgressBus, ProgressEvent, ProgressSubscriber

__all__ = [
    "ProgressBus",
    "ProgressEvent",
    "ProgressSubscriber",
]
