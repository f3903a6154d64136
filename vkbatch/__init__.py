"""Batch job controller primitives: models, job cache, work queue, TTL cleanup and job actions."""

__version__ = "0.1.0"