from __future__ import annotations

"""Failure classification and the fatal-failure policy.

When a TODO item exhausts its retries the agent loop asks a
``FailurePolicy`` whether the failure blocks the rest of the plan. A fatal
failure moves the loop to ``failed``; any other failure leaves the item
``failed`` and the loop continues with the next pending item.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Tuple, Union

from ..schemas.domain import TodoItem, TodoList

logger = logging.getLogger(__name__)


class FailureType(str, Enum):
    temporary = "temporary"
    data = "data"
    logic = "logic"
    permission = "permission"
    system = "system"


@dataclass(frozen=True)
class FailureInfo:
    type: FailureType
    retryable: bool
    message: str


_PATTERNS: Tuple[Tuple[FailureType, re.Pattern], ...] = (
    (FailureType.permission, re.compile(r"permission|forbidden|unauthori[sz]ed|access denied|\b40[13]\b|无权限|权限", re.I)),
    (FailureType.temporary, re.compile(r"timeout|timed out|temporar|unavailable|connection|rate limit|\b429\b|\b50[234]\b|超时", re.I)),
    (FailureType.data, re.compile(r"not found|invalid|missing|required|validation|\b404\b|\b422\b|不存在|无效", re.I)),
    (FailureType.system, re.compile(r"internal|database|out of memory|\b500\b|系统错误", re.I)),
)

_NOT_RETRYABLE: FrozenSet[FailureType] = frozenset({FailureType.permission, FailureType.system})


def classify_failure(error: Union[BaseException, str, None]) -> FailureInfo:
    """Map an exception or error message to a ``FailureInfo``."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FailureInfo(FailureType.temporary, True, str(error) or "action timed out")
    if isinstance(error, PermissionError):
        return FailureInfo(FailureType.permission, False, str(error) or "permission denied")

    message = str(error) if error is not None else "unknown error"
    for failure_type, pattern in _PATTERNS:
        if pattern.search(message):
            return FailureInfo(failure_type, failure_type not in _NOT_RETRYABLE, message)
    return FailureInfo(FailureType.logic, True, message)


class FailurePolicy:
    """Decide whether a terminally failed item blocks the remaining plan.

    Subclass or construct with different arguments to change the boundary.
    """

    def __init__(
        self,
        *,
        fatal_types: Iterable[FailureType] = (FailureType.system,),
        dependents_fatal: bool = True,
    ) -> None:
        self._fatal_types = frozenset(fatal_types)
        self._dependents_fatal = dependents_fatal

    def is_fatal(self, item: TodoItem, failure: FailureInfo, todo_list: TodoList) -> bool:
        if failure.type in self._fatal_types:
            logger.debug(f"Failure of item '{item.id}' is fatal: type {failure.type.value}")
            return True
        if self._dependents_fatal:
            for other in todo_list.items:
                if not other.is_terminal and item.id in other.depends_on:
                    logger.debug(f"Failure of item '{item.id}' is fatal: '{other.id}' depends on it")
                    return True
        return False
