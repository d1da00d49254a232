# bundlewallet/services/topups.py
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from bundlewallet.db import unit_of_work
from bundlewallet.errors import ValidationError
from bundlewallet.models import LedgerEntry, LedgerEntryType
from bundlewallet.retry import run_with_retry
from bundlewallet.services.ledger import KEYED_RETRY_CONFIG, apply_once

logger = logging.getLogger(__name__)

GATEWAY_OUTCOMES = {"success", "pending", "failed"}


@dataclass
class TopupResult:
    outcome: str
    credited: bool
    already_processed: bool = False
    entry: Optional[LedgerEntry] = None


def topup_reference(gateway_reference: str) -> str:
    return f"topup:{gateway_reference}"


def credit_topup(account_id: int, amount: int, gateway_reference: str) -> Tuple[LedgerEntry, bool]:
    """
    Credit an approved top-up. Keyed by the gateway's reference so a payment
    reported twice (webhook and polling) is credited once.
    """
    if amount <= 0:
        raise ValidationError("Top-up amount must be greater than 0", {"amount": amount})
    if not gateway_reference:
        raise ValidationError("Top-up needs the gateway reference")

    def attempt():
        with unit_of_work() as db:
            return apply_once(
                db, account_id, amount, LedgerEntryType.TOPUP_APPROVED,
                f"Wallet top-up of {amount} - Ref: {gateway_reference}",
                topup_reference(gateway_reference),
            )

    entry, created = run_with_retry("topups.credit", attempt, KEYED_RETRY_CONFIG)
    if created:
        logger.info(f"topups: credited {amount} to account {account_id} ({gateway_reference})")
    return entry, created


def apply_gateway_outcome(account_id: int, amount: int, gateway_reference: str, outcome: str) -> TopupResult:
    """Act on a settlement signal from the payment gateway. Only success moves money."""
    outcome = (outcome or "").lower()
    if outcome not in GATEWAY_OUTCOMES:
        raise ValidationError(f"Unknown gateway outcome: {outcome}", {"outcome": outcome})

    if outcome != "success":
        logger.info(f"topups: {gateway_reference} reported {outcome}, nothing credited")
        return TopupResult(outcome=outcome, credited=False)

    entry, created = credit_topup(account_id, amount, gateway_reference)
    return TopupResult(outcome=outcome, credited=created, already_processed=not created, entry=entry)
