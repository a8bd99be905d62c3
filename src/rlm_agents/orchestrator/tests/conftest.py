"""Pytest configuration and shared fixtures for orchestrator tests."""

from rlm_agents.orchestrator.tests.common_fixtures import mock_llm_client

__all__ = [
    "mock_llm_client",
]
