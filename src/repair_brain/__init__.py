"""Repair Brain: self-healing monitoring, diagnosis, repair and prediction."""

__version__ = "0.1.0"
