"""Sandbox, filesystem and git tooling."""
