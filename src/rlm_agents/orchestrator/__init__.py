"""
Orchestrator - the recursive REPL loop.

This module provides:
- RLMAgent: Iterates model -> code -> bounded output until a final answer
- RLMAgentSettings: Limits, models and hooks of one agent
- Response parsing: code block and FINAL / FINAL_VAR extraction
- Hooks and callbacks: interception and observation of the loop
- Accounting: call budget and token usage summaries
"""
