"""
LLM core - text generation over OpenAI-compatible endpoints.

This module provides:
- LLMClient: Async client returning TextResponse (content + usage)
- TextGenerationService: Protocol the orchestrator depends on
- Provider: Base URLs and default models per provider
"""
