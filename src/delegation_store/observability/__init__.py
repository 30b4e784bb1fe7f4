"""Observability for the delegation store."""

from .metrics import StoreMetrics

__all__ = ["StoreMetrics"]
