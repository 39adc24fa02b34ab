"""Asynchronous CV and project report evaluation pipeline."""

__version__ = "0.1.0"
