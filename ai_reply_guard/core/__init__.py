"""
Core modules for AI Reply Guard.

This package contains pricing, budget guardrails, conversation memory,
reply delivery and the completion orchestrator.
"""
