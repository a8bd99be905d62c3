"""
rlm_agents - Recursive Language Model agents over a sandboxed Python REPL.

Packages:
- llm_core: OpenAI-compatible text generation client and provider defaults
- sandbox: Restricted execution engine and the per-invocation session
- orchestrator: RLMAgent loop, response parsing, hooks, callbacks, accounting

Usage:
    from rlm_agents.llm_core.llm_client import create_openai_client
    from rlm_agents.orchestrator.rlm_agent import RLMAgent, RLMAgentSettings

    agent = RLMAgent(
        llm_client=create_openai_client(),
        settings=RLMAgentSettings(model="gpt-4o", sub_model="gpt-4o-mini"),
    )
    result = await agent.generate(context=documents, query="Who signed first?")
"""
