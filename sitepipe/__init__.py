"""Scheduled multi-site data collection pipelines and automation tasks."""

__version__ = "0.1.0"
