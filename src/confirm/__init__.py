"""
Mobile confirmations: listing and answering pending trade/market actions,
plus the scheduled poller that does it for every stored account.
"""

from .engine import ActionOutcome, BatchReport, Confirmation, ConfirmationEngine

__all__ = ["ActionOutcome", "BatchReport", "Confirmation", "ConfirmationEngine"]
