# noqa: E402

from __future__ import annotations

import typing as t
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict  # noqa: E402

# The .env file at the project root is loaded eagerly so that values edited
# during development override whatever the shell exported.
# .parents[2] goes: settings.py -> rlm_agents/ -> src/ -> project_root/
_DOT_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
loaded = load_dotenv(_DOT_ENV_PATH, override=True)


if t.TYPE_CHECKING:
    from rlm_agents.llm_core.llm_configs import Provider


class Settings(BaseSettings):
    """Centralized settings for the RLM agents package.

    Provider credentials and the default limits of the recursive loop are
    read from the environment. Access them through get_settings().
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # OpenAI
    openai_api_key: str = ""

    # Azure OpenAI
    azure_openai_api_key: str = ""
    azure_openai_endpoint: str = ""

    # Other OpenAI-compatible providers
    groq_api_key: str = ""
    together_api_key: str = ""
    deepseek_api_key: str = ""

    # Recursive loop defaults
    rlm_model: str = ""
    rlm_sub_model: str = ""
    rlm_max_iterations: int = 20
    rlm_max_llm_calls: int = 50
    rlm_max_output_chars: int = 100_000
    rlm_max_history_preview: int = 500
    rlm_max_depth: int = 1
    rlm_execution_timeout: float = 120.0
    rlm_verbose: bool = False


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the current settings instance.

    Initializes settings from environment variables if not already configured.
    """
    if _settings is None:
        configure_settings()
    return t.cast(Settings, _settings)


def configure_settings(**kwargs: t.Any) -> None:
    """Configure settings with optional overrides.

    Args:
        **kwargs: Optional setting overrides (e.g., rlm_max_depth=2)
    """
    global _settings
    _settings = Settings(
        **kwargs
    )  # pyright: ignore[reportCallIssue, reportArgumentType]


def get_api_key(provider: Provider) -> str:
    """Get the API key for a given provider.

    Args:
        provider: The LLM provider to get the API key for.

    Returns:
        The API key string, or empty string if not configured.

    Example:
        >>> from rlm_agents.llm_core.llm_configs import Provider
        >>> api_key = get_api_key(Provider.OPENAI)
    """
    from rlm_agents.llm_core.llm_configs import Provider

    settings = get_settings()

    provider_key_map: dict[Provider, str] = {
        Provider.OPENAI: settings.openai_api_key,
        Provider.AZURE_OPENAI: settings.azure_openai_api_key,
        Provider.OLLAMA: "ollama",  # Ollama ignores the key but openai requires one
        Provider.GROQ: settings.groq_api_key,
        Provider.TOGETHER: settings.together_api_key,
        Provider.DEEPSEEK: settings.deepseek_api_key,
        Provider.VLLM: "",
    }

    return provider_key_map.get(provider, "")


def get_endpoint(provider: Provider) -> str:
    """Get the endpoint/base_url for a given provider.

    Azure OpenAI endpoints are user specific and come from settings; every
    other provider uses the static base_url of its ProviderConfig.
    """
    from rlm_agents.llm_core.llm_configs import Provider

    if provider == Provider.AZURE_OPENAI:
        return get_settings().azure_openai_endpoint

    return provider.base_url
