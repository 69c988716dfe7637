"""Durable content job pipeline: queue, workers, research cache and fetch guard."""

__version__ = "0.1.0"
