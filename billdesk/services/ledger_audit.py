"""Item payment ledger audit: consistency checks and redistribution suggestions."""

import logging
import warnings
from collections import Counter
from typing import Iterable, List

from billdesk.models.bill import Bill, ItemPayment
from billdesk.models.order import Order
from billdesk.schemas.bill import (
    LedgerAuditReport,
    OrphanedPayment,
    RedistributionCandidate,
    RedistributionSuggestion,
)
from billdesk.services.item_identity import grouping_key
from billdesk.services.reconciliation import effective_paid, ledger_index, live_items, orphaned_entries
from billdesk.utils.payment_validation import IntegrityWarning

logger = logging.getLogger(__name__)


def check_paid_consistency(bill: Bill) -> int:
    """
    Compare stored paid_cents with the ledger sum.

    Emits IntegrityWarning on mismatch and returns the ledger sum, which is
    the value callers should trust.
    """
    ledger_paid = bill.ledger_paid_cents()
    if ledger_paid != bill.paid_cents:
        message = (
            f"Bill {bill.bill_number}: stored paid ({bill.paid_cents} cents) "
            f"differs from ledger ({ledger_paid} cents)"
        )
        logger.warning(message)
        warnings.warn(message, IntegrityWarning, stacklevel=2)
    return ledger_paid


def _entry_key(entry: ItemPayment) -> str:
    return grouping_key(entry.item_name, entry.price_per_unit_cents, entry.addons)


def redistribution_suggestions(
    orphans: Iterable[ItemPayment],
    entries: Iterable[ItemPayment],
    live: dict,
) -> List[RedistributionSuggestion]:
    """Where an orphan's money could go. Nothing is moved automatically."""
    index = ledger_index(entries)
    suggestions = []

    for orphan in orphans:
        if orphan.paid_amount_cents <= 0:
            continue
        key = _entry_key(orphan)
        candidates = []
        for identity, item in live.items():
            if item.key != key:
                continue
            available = item.quantity - effective_paid(index.get(identity), item)
            if available > 0:
                candidates.append(RedistributionCandidate(
                    item_id=identity,
                    item_name=item.name,
                    available_quantity=available,
                    can_receive_cents=available * item.price_cents,
                ))

        suggestions.append(RedistributionSuggestion(
            orphaned_payment=_orphan_summary(orphan),
            candidates=candidates,
            recommendation=None if candidates else "Consider refunding to customer or adding to bill credit",
        ))
    return suggestions


def _orphan_summary(entry: ItemPayment) -> OrphanedPayment:
    return OrphanedPayment(
        item_id=entry.item_id,
        item_name=entry.item_name,
        paid_quantity=entry.paid_quantity,
        paid_amount_cents=entry.paid_amount_cents,
    )


def audit_item_payments(bill: Bill, orders: Iterable[Order]) -> LedgerAuditReport:
    errors: List[str] = []
    warnings_: List[str] = []
    live = live_items(orders)
    entries = bill.item_payments

    orphans = orphaned_entries(entries, live)
    if orphans:
        warnings_.append(f"Found {len(orphans)} orphaned item payments")
        orphaned_amount = sum(entry.paid_amount_cents for entry in orphans)
        if orphaned_amount > 0:
            errors.append(f"Orphaned payments total: {orphaned_amount} cents")

    counts = Counter(entry.item_id for entry in entries)
    duplicates = [item_id for item_id, count in counts.items() if count > 1]
    if duplicates:
        errors.append(
            "Found duplicate item payments: "
            + ", ".join(f"{item_id} ({counts[item_id]}x)" for item_id in duplicates)
        )

    negative = [e.item_id for e in entries if e.paid_amount_cents < 0 or e.paid_quantity < 0]
    if negative:
        errors.append(f"Found {len(negative)} payments with negative amounts")

    overpaid = [e.item_id for e in entries if e.paid_quantity > e.quantity]
    if overpaid:
        warnings_.append(f"Found {len(overpaid)} overpaid items")

    ledger_paid = bill.ledger_paid_cents()
    if ledger_paid != bill.paid_cents:
        errors.append(
            f"Stored paid ({bill.paid_cents} cents) differs from ledger ({ledger_paid} cents)"
        )

    report = LedgerAuditReport(
        is_valid=not errors,
        errors=errors,
        warnings=warnings_,
        orphaned_payments=[_orphan_summary(entry) for entry in orphans],
        duplicates=duplicates,
        negative_payments=negative,
        overpayments=overpaid,
        ledger_paid_cents=ledger_paid,
        stored_paid_cents=bill.paid_cents,
        suggestions=redistribution_suggestions(orphans, entries, live),
    )

    if not report.is_valid:
        logger.warning("Bill %s has payment issues: %s", bill.bill_number, report.errors)
    elif report.warnings:
        logger.info("Bill %s has payment warnings: %s", bill.bill_number, report.warnings)
    else:
        logger.debug("Bill %s item payments are valid", bill.bill_number)
    return report
