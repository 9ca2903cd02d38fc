"""metatx-relay — monitoring package."""

from .metrics import RelayMetrics

__all__ = ["RelayMetrics"]
