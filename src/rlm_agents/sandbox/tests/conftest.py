"""Pytest configuration and shared fixtures for sandbox tests."""

import pytest

from rlm_agents.orchestrator.rlm_agent import RLMAgentSettings
from rlm_agents.orchestrator.tests.common_fixtures import mock_llm_client

__all__ = [
    "mock_llm_client",
    "session_settings",
]


@pytest.fixture
def session_settings() -> RLMAgentSettings:
    """Small limits so budget and depth rules are easy to hit."""
    return RLMAgentSettings(
        model="root-model",
        sub_model="small-model",
        max_iterations=4,
        max_llm_calls=2,
        max_output_chars=1000,
        max_history_preview=100,
        max_depth=1,
        execution_timeout=5.0,
    )
