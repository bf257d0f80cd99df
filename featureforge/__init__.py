"""Durable multi-phase feature pipeline driven by LLM agents."""

__version__ = "0.1.0"
