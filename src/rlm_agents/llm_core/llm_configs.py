"""
LLM Provider Configurations.

Base URLs and default models for the OpenAI-compatible providers the
recursive loop can run against. Each provider names two defaults: the root
model that drives the REPL loop and a (usually cheaper) sub-model answering
llm_query() calls made from guest code.

| Provider      | root model                      | sub-model                      | usage details |
|---------------|---------------------------------|--------------------------------|---------------|
| OPENAI        | gpt-4o                          | gpt-4o-mini                    | Yes           |
| AZURE_OPENAI  | gpt-5-mini                      | gpt-5-mini                     | Yes           |
| OLLAMA        | llama3.2                        | llama3.2                       | No            |
| GROQ          | llama-3.3-70b-versatile         | llama-3.1-8b-instant           | No            |
| TOGETHER      | Llama-3.3-70B-Instruct-Turbo    | Llama-3.2-3B-Instruct-Turbo    | No            |
| DEEPSEEK      | deepseek-chat                   | deepseek-chat                  | Yes           |
| VLLM          | served model                    | served model                   | No            |

"Usage details" means the provider fills prompt_tokens_details and
completion_tokens_details, which feed the cached and reasoning counters of
UsageSummary. Providers without them report zero for those counters.
"""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for an LLM provider.

    Note: API keys are managed centrally via Settings, not here.
    Use get_api_key(provider) from rlm_agents.settings to get the API key.
    """

    base_url: str
    default_model: str
    default_sub_model: str
    reports_usage_details: bool = False


class Provider(Enum):
    """LLM Provider configurations."""

    OPENAI = ProviderConfig(
        base_url="https://api.openai.com/v1",
        default_model="gpt-4o",
        default_sub_model="gpt-4o-mini",
        reports_usage_details=True,
    )

    AZURE_OPENAI = ProviderConfig(
        base_url="",  # Set via settings.azure_openai_endpoint
        default_model="gpt-5-mini",
        default_sub_model="gpt-5-mini",
        reports_usage_details=True,
    )

    OLLAMA = ProviderConfig(
        base_url="http://localhost:11434/v1",
        default_model="llama3.2",
        default_sub_model="llama3.2",
    )

    GROQ = ProviderConfig(
        base_url="https://api.groq.com/openai/v1",
        default_model="llama-3.3-70b-versatile",
        default_sub_model="llama-3.1-8b-instant",
    )

    TOGETHER = ProviderConfig(
        base_url="https://api.together.xyz/v1",
        default_model="meta-llama/Llama-3.3-70B-Instruct-Turbo",
        default_sub_model="meta-llama/Llama-3.2-3B-Instruct-Turbo",
    )

    DEEPSEEK = ProviderConfig(
        base_url="https://api.deepseek.com/v1",
        default_model="deepseek-chat",
        default_sub_model="deepseek-chat",
        reports_usage_details=True,
    )

    VLLM = ProviderConfig(
        base_url="http://localhost:8000/v1",
        default_model="",  # whatever model the server was launched with
        default_sub_model="",
    )

    @property
    def base_url(self) -> str:
        return self.value.base_url

    @property
    def default_model(self) -> str:
        return self.value.default_model

    @property
    def default_sub_model(self) -> str:
        return self.value.default_sub_model

    @property
    def reports_usage_details(self) -> bool:
        return self.value.reports_usage_details
