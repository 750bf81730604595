"""Credit ledger error taxonomy."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class QuotaExceededError(LedgerError):
    """Business outcome: the account cannot afford the operation."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, *, required: int, subscription_credits: int, extra_credits: int):
        self.required = int(required)
        self.subscription_credits = int(subscription_credits)
        self.extra_credits = int(extra_credits)
        self.available = self.subscription_credits + self.extra_credits
        super().__init__(
            f"Insufficient credits: need {self.required}, have {self.available} "
            f"(subscription: {self.subscription_credits}, extra: {self.extra_credits})",
            details={
                "required": self.required,
                "available": self.available,
                "shortfall": self.shortfall,
                "subscription_credits": self.subscription_credits,
                "extra_credits": self.extra_credits,
            },
        )

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


class NotFoundError(LedgerError):
    code = "NOT_FOUND"


class ConflictError(LedgerError):
    code = "CONFLICT"


class BadRequestError(LedgerError):
    code = "BAD_REQUEST"


class StoreFailureError(LedgerError):
    """Transaction or connectivity failure; the transaction was rolled back."""

    code = "STORE_FAILURE"
