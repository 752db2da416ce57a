"""Intent understanding pipeline.

Free text flows through the layers of this package in order:

- ``fuzzy_matcher``: similarity primitives (exact, prefix, contains,
  initials, edit distance).
- ``entity_recognizer``: resource types, names, actions and parameters.
- ``parser``: rule strategy first, model strategy as a fallback.
- ``confidence``: score and action (auto_execute/confirm/clarify/reject).
- ``clarification``: targeted questions for low-confidence intents.
- ``pipeline``: ``IntentPipeline`` wires the steps above together.
"""

from .catalog import InMemoryResourceCatalog, ResourceCatalog
from .clarification import (
    ClarificationDialog,
    ClarificationOutcome,
    generate_clarification,
    generate_examples,
    help_message,
    process_response,
)
from .confidence import evaluate_confidence
from .entity_recognizer import recognize_entities
from .fuzzy_matcher import FuzzyMatch, MatchStrategy, best_match, rank
from .parser import (
    IntentParser,
    LLMInvoker,
    LLMIntentStrategy,
    ParserConfig,
    PydanticAIInvoker,
    RuleIntentStrategy,
    parse_intent,
    parse_intent_by_rules,
)
from .pipeline import IntentPipeline, UnderstandingResult

__all__ = [
    "ClarificationDialog",
    "ClarificationOutcome",
    "FuzzyMatch",
    "InMemoryResourceCatalog",
    "IntentParser",
    "IntentPipeline",
    "LLMIntentStrategy",
    "LLMInvoker",
    "MatchStrategy",
    "ParserConfig",
    "PydanticAIInvoker",
    "ResourceCatalog",
    "RuleIntentStrategy",
    "UnderstandingResult",
    "best_match",
    "evaluate_confidence",
    "generate_clarification",
    "generate_examples",
    "help_message",
    "parse_intent",
    "parse_intent_by_rules",
    "process_response",
    "rank",
    "recognize_entities",
]
