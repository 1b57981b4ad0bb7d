"""Durable batch queue for image generation requests."""

__version__ = "0.1.0"
