"""LLM provider adapters and model routing."""
