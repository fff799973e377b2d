"""Shared utilities: structured logging and the LLM client."""
