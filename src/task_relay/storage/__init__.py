"""Persistence helpers shared by the task store and the broker."""
