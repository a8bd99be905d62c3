"""Centralized configuration for the rlm_agents package."""

from pathlib import Path

import jinja2
from jinja2.sandbox import SandboxedEnvironment


RLM_AGENTS_ROOT = Path(__file__).parent
ORCHESTRATOR_PROMPTS_DIR = RLM_AGENTS_ROOT / "orchestrator" / "prompts"


def _create_jinja_env(prompts_dir: Path) -> SandboxedEnvironment:
    """Create a sandboxed jinja environment for a prompts directory.

    StrictUndefined raises errors on undefined variables instead of silent empty strings.
    See: https://jinja.palletsprojects.com/en/3.1.x/sandbox/
    """
    return SandboxedEnvironment(
        loader=jinja2.FileSystemLoader(prompts_dir),
        undefined=jinja2.StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=False,
    )


orchestrator_jinja_env = _create_jinja_env(ORCHESTRATOR_PROMPTS_DIR)


def get_orchestrator_template_module(name: str):
    """Load a jinja template module (for macro access) from orchestrator prompts."""
    return orchestrator_jinja_env.get_template(name).module
