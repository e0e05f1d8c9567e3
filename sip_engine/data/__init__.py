"""Persistence: engine/session management, models and repositories."""
