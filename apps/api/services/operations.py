"""Static credit policy: account tiers, operation classes and operation costs."""

from __future__ import annotations

from enum import Enum


class AccountTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class OperationClass(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class OperationType(str, Enum):
    EDIT_EXPAND = "edit_expand"
    EDIT_SHORTEN = "edit_shorten"
    EDIT_REWRITE = "edit_rewrite"
    EDIT_FIX_GRAMMAR = "edit_fix_grammar"
    CONTINUE_PROSE = "continue_prose"
    CONTINUE_IDEAS = "continue_ideas"
    SUMMARIZE = "summarize"
    IMAGE_GENERATE = "image_generate"

    @property
    def cost(self) -> int:
        return OPERATION_COSTS[self]

    @property
    def operation_class(self) -> OperationClass:
        if self is OperationType.IMAGE_GENERATE:
            return OperationClass.IMAGE
        return OperationClass.TEXT


# Weighted credit cost per operation. Policy, never derived from request content.
OPERATION_COSTS = {
    OperationType.EDIT_EXPAND: 2,
    OperationType.EDIT_SHORTEN: 1,
    OperationType.EDIT_REWRITE: 2,
    OperationType.EDIT_FIX_GRAMMAR: 1,
    OperationType.CONTINUE_PROSE: 5,
    OperationType.CONTINUE_IDEAS: 3,
    OperationType.SUMMARIZE: 1,
    OperationType.IMAGE_GENERATE: 10,
}


def resolve_tier(value) -> AccountTier:
    """Coerce a tier claim to ``AccountTier``; unknown values fall back to free."""
    if isinstance(value, AccountTier):
        return value
    try:
        return AccountTier(str(value or "").strip().lower())
    except ValueError:
        return AccountTier.FREE
