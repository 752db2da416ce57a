"""GOI (Goal-Oriented Interaction) engine.

This package lets a human and an AI agent jointly drive a multi-step task to
completion. The AI plans a goal into a TODO list and executes it one item at a
time; a configurable autonomy level decides which items need a human
checkpoint, and control passes back and forth between both sides.

High-level architecture
-----------------------

- ``goi_engine.intent``: free text to a confidence-scored ``ParsedIntent``
  (fuzzy matching, entity recognition, a rule parser with a model fallback,
  confidence evaluation and clarification dialogs).
- ``goi_engine.planning``: goal decomposition into a validated ``TodoList``
  with deterministic templates or a Pydantic AI planner.
- ``goi_engine.checkpoint``: the prioritized, swappable rule engine that
  decides when a human must confirm an item.
- ``goi_engine.collaboration``: controller/mode tracking, the event bus and
  the shared ``Understanding`` snapshot.
- ``goi_engine.runtime``: the LangGraph based ``AgentLoop`` and the
  ``AgentSessionManager`` registry.
- ``goi_engine.service``: ``GoiService``, the boundary facade returning
  structured errors.

Configuration
-------------

Settings are read from the environment (``GOI_*``) and ``.env`` through
``goi_engine.core.config.settings``.
"""

from .runtime import AgentLoop, AgentSessionManager
from .service import ErrorResult, GoiService

__all__ = ["AgentLoop", "AgentSessionManager", "ErrorResult", "GoiService"]
