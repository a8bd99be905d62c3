"""
Sandbox - where model-authored code runs.

This module provides:
- RestrictedPythonEngine: Persistent restricted namespace on a guest thread
- SandboxSession: Bridge API (llm_query, sub_rlm, FINAL...) and call budget
"""
