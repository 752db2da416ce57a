from __future__ import annotations

"""Parse -> evaluate -> clarify.

``IntentPipeline`` is the human-facing entry point of the intent layer. It
never raises: parser failures and unexpected errors become a ``reject``
result carrying an "unable to understand" message.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..schemas.intent import (
    ClarificationRequest,
    ClarificationResponse,
    ClarificationType,
    ConfidenceAction,
    ConfidenceResult,
    IntentCategory,
    IntentContext,
    IntentParseResult,
    ParsedIntent,
)
from .clarification import (
    ClarificationDialog,
    ClarificationOutcome,
    help_message,
)
from .confidence import evaluate_confidence
from .parser import IntentParser

logger = logging.getLogger(__name__)

UNABLE_TO_UNDERSTAND = "抱歉，我无法理解您的请求。"


@dataclass
class UnderstandingResult:
    action: ConfidenceAction
    intent: ParsedIntent
    evaluation: ConfidenceResult
    parse: Optional[IntentParseResult] = None
    clarification: Optional[ClarificationRequest] = None
    dialog: Optional[ClarificationDialog] = None
    message: Optional[str] = None


class IntentPipeline:
    def __init__(self, parser: IntentParser, *, max_rounds: Optional[int] = None) -> None:
        self._parser = parser
        self._max_rounds = max_rounds

    async def understand(self, text: str, context: Optional[IntentContext] = None) -> UnderstandingResult:
        try:
            parsed = await self._parser.parse(text, context)
            evaluation = evaluate_confidence(parsed.intent, context)
        except Exception as e:
            logger.error(f"Intent pipeline failed for '{text}': {e}", exc_info=True)
            return self._unable(
                ParsedIntent(category=IntentCategory.unknown, confidence=0.0, raw_text=text or ""),
                message=UNABLE_TO_UNDERSTAND,
            )

        intent = parsed.intent
        action = evaluation.action
        logger.debug(f"Understood '{text}' as {intent.category.value} -> {action.value} ({evaluation.score:.2f})")

        if action == ConfidenceAction.auto_execute:
            return UnderstandingResult(action=action, intent=intent, evaluation=evaluation, parse=parsed)

        if action == ConfidenceAction.confirm:
            dialog = ClarificationDialog(intent, max_rounds=self._max_rounds, context=context)
            request = dialog.begin(ClarificationType.confirm_action)
            return UnderstandingResult(
                action=action,
                intent=intent,
                evaluation=evaluation,
                parse=parsed,
                clarification=request,
                dialog=dialog,
            )

        if action == ConfidenceAction.clarify:
            dialog = ClarificationDialog(intent, max_rounds=self._max_rounds, context=context)
            request = dialog.begin() or dialog.begin(ClarificationType.general)
            return UnderstandingResult(
                action=action,
                intent=intent,
                evaluation=evaluation,
                parse=parsed,
                clarification=request,
                dialog=dialog,
            )

        return UnderstandingResult(
            action=ConfidenceAction.reject,
            intent=intent,
            evaluation=evaluation,
            parse=parsed,
            message=f"{UNABLE_TO_UNDERSTAND}\n{help_message()}",
        )

    def answer(self, dialog: ClarificationDialog, response: ClarificationResponse) -> ClarificationOutcome:
        """Feed one human reply into an open dialog."""
        return dialog.respond(response)

    def _unable(self, intent: ParsedIntent, *, message: str) -> UnderstandingResult:
        evaluation = evaluate_confidence(intent)
        return UnderstandingResult(
            action=ConfidenceAction.reject, intent=intent, evaluation=evaluation, message=message
        )
