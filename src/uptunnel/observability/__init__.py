"""Prometheus metrics."""

from .metrics import generate_metrics, get_content_type

__all__ = ["generate_metrics", "get_content_type"]
