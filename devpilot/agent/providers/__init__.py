"""LLM backend adapters normalized to one streaming event protocol."""
