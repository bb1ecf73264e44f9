"""Shared utilities: configuration, logging, LLM client factory."""
