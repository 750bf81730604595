"""Models package."""

from .credit_balance import CreditBalance
from .credit_ledger import CreditLedgerEntry
from .usage_counter import UsageCounter
