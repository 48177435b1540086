"""Durable background task orchestration on SQLite."""

__version__ = "0.1.0"
