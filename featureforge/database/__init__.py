"""Persistence: SQLModel tables, async sessions and replay-safe CRUD."""
