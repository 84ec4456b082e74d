"""Bill payment errors and request validation utilities."""
from typing import List, Optional


class BillingError(Exception):
    """Base class for bill ledger errors."""
    pass


class PaymentValidationError(BillingError):
    """Malformed payment request: bad quantity, amount, method or row id."""
    pass


class OverpaymentError(BillingError):
    """Requested quantity exceeds the unpaid capacity of an item group."""
    pass


class StaleReferenceError(BillingError):
    """Requested row refers to an order item that no longer exists."""
    pass


class BillStateError(BillingError):
    """Operation not allowed in the bill's current status."""
    pass


class BillNotFoundError(BillingError):
    pass


class OrderNotFoundError(BillingError):
    pass


class ConcurrentModificationError(BillingError):
    """Bill version changed between read and save."""
    pass


class IntegrityWarning(UserWarning):
    """Stored paid amount disagrees with the ledger."""
    pass


def validate_quantity(quantity, item_id: str) -> None:
    """
    Validate a requested quantity.

    Rules:
    - must be an int (bools and floats are rejected, even 2.0)
    - must be positive
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise PaymentValidationError(
            f"Item '{item_id}' has non-integer quantity: {quantity!r}"
        )
    if quantity <= 0:
        raise PaymentValidationError(
            f"Item '{item_id}' has non-positive quantity: {quantity}"
        )


def validate_payment_items(items: Optional[List]) -> None:
    """
    Validate the lines of an item payment request.

    Each line needs an item_id and a quantity; an empty request is rejected.
    """
    if not items:
        raise PaymentValidationError("Select at least one item to pay for")

    for line in items:
        if not line.item_id:
            raise PaymentValidationError("Payment line is missing item_id")
        validate_quantity(line.quantity, line.item_id)


def validate_amount(amount_cents, remaining_cents: int) -> None:
    """Validate a session installment: positive int, at most the remaining cost."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise PaymentValidationError(
            f"Payment amount must be a positive number of cents, got {amount_cents!r}"
        )
    if amount_cents > remaining_cents:
        raise OverpaymentError(
            f"Amount ({amount_cents} cents) exceeds remaining ({remaining_cents} cents)"
        )
