from types import SimpleNamespace

import pytest
from bson import ObjectId

from billdesk.models.bill import BillStatus, ItemPayment, PaymentMethod, PaymentTracking, SessionPayment
from billdesk.schemas.bill import PaymentItemIn
from billdesk.services.payment_ledger import (
    apply_payment,
    apply_session_payment,
    enforce_entry_integrity,
    missing_entries,
    sync_entries,
)
from billdesk.services.reconciliation import live_items
from billdesk.utils.payment_validation import (
    BillStateError,
    OverpaymentError,
    PaymentValidationError,
    StaleReferenceError,
)
from conftest import NOW, STAFF_ID, make_bill, make_item, make_order


def _row(order, item):
    return f"{order.id}-{item.item_id}"


def _pay(bill, orders, *lines, method="cash"):
    return apply_payment(
        bill, orders, [PaymentItemIn(item_id=i, quantity=q) for i, q in lines], method, STAFF_ID, now=NOW
    )


def test_pay_part_of_an_item():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)

    delta = _pay(bill, [order], (_row(order, tea), 2))

    entry = delta.item_payments[0]
    assert entry.paid_quantity == 2
    assert entry.paid_amount_cents == 20
    assert entry.is_paid is False
    assert entry.payment_history[0].quantity == 2
    assert entry.payment_history[0].method == PaymentMethod.CASH
    assert delta.paid_cents == 20
    assert delta.amount_cents == 20
    assert delta.record.type == "partial-items"
    assert delta.record.details.paid_items[0].quantity == 2


def test_payment_spreads_over_identical_items_in_order():
    first_tea, second_tea = make_item("Tea", 10, 2), make_item("Tea", 10, 2)
    first, second = make_order(first_tea), make_order(second_tea)
    bill = make_bill(first, second)

    delta = _pay(bill, [first, second], (_row(first, first_tea), 3))

    paid = {e.item_id: e.paid_quantity for e in delta.item_payments}
    assert paid == {_row(first, first_tea): 2, _row(second, second_tea): 1}
    assert delta.paid_cents == 30


def test_fully_paid_constituents_are_skipped():
    first_tea, second_tea = make_item("Tea", 10, 2), make_item("Tea", 10, 2)
    first, second = make_order(first_tea), make_order(second_tea)
    bill = make_bill(first, second)
    bill.item_payments = _pay(bill, [first, second], (_row(first, first_tea), 2)).item_payments

    delta = _pay(bill, [first, second], (_row(first, first_tea), 1))

    paid = {e.item_id: e.paid_quantity for e in delta.item_payments}
    assert paid[_row(second, second_tea)] == 1


def test_overpayment_is_rejected_and_ledger_untouched():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)
    bill.item_payments = _pay(bill, [order], (_row(order, tea), 2)).item_payments
    bill.paid_cents = 20
    before = bill.model_dump()

    with pytest.raises(OverpaymentError):
        _pay(bill, [order], (_row(order, tea), 2))

    assert bill.model_dump() == before


def test_request_is_all_or_nothing_across_lines():
    tea, cake = make_item("Tea", 10, 3), make_item("Cake", 50, 1)
    order = make_order(tea, cake)
    bill = make_bill(order)
    before = bill.model_dump()

    with pytest.raises(OverpaymentError):
        _pay(bill, [order], (_row(order, tea), 1), (_row(order, cake), 2))

    assert bill.model_dump() == before


def test_lines_for_the_same_row_share_capacity():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)

    with pytest.raises(OverpaymentError):
        _pay(bill, [order], (_row(order, tea), 2), (_row(order, tea), 2))


def test_deleted_item_is_a_stale_reference():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)
    row = _row(order, tea)
    order.items = [make_item("Tea", 10, 3)]

    with pytest.raises(StaleReferenceError):
        _pay(bill, [order], (row, 1))


def test_unknown_row_is_a_validation_error():
    order = make_order(make_item("Tea", 10, 3))
    bill = make_bill(order)

    with pytest.raises(PaymentValidationError):
        _pay(bill, [order], (f"{ObjectId()}-0", 1))


@pytest.mark.parametrize("quantity", [0, -1, 1.5, 2.0, True])
def test_bad_quantities_are_rejected(quantity):
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)
    line = SimpleNamespace(item_id=_row(order, tea), quantity=quantity)

    with pytest.raises(PaymentValidationError):
        apply_payment(bill, [order], [line], "cash", STAFF_ID, now=NOW)


def test_empty_request_and_unknown_method_are_rejected():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)

    with pytest.raises(PaymentValidationError):
        _pay(bill, [order])
    with pytest.raises(PaymentValidationError):
        _pay(bill, [order], (_row(order, tea), 1), method="cheque")


def test_cancelled_bill_takes_no_payments():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order, status=BillStatus.CANCELLED)

    with pytest.raises(BillStateError):
        _pay(bill, [order], (_row(order, tea), 1))


def test_orphaned_payment_does_not_count_against_new_item():
    old_tea = make_item("Tea", 10, 3)
    order = make_order(old_tea)
    bill = make_bill(order)
    bill.item_payments = _pay(bill, [order], (_row(order, old_tea), 1)).item_payments

    new_tea = make_item("Tea", 10, 3)
    order.items = [new_tea]
    delta = _pay(bill, [order], (_row(order, new_tea), 3))

    by_id = {e.item_id: e for e in delta.item_payments}
    assert by_id[_row(order, new_tea)].paid_quantity == 3
    assert by_id[_row(order, old_tea)].paid_quantity == 1
    # Orphaned money stays in the ledger sum
    assert delta.paid_cents == 40


def test_legacy_amount_entry_keeps_paying_by_quantity():
    tea = make_item("Tea", 10, 3, legacy=True)
    order = make_order(tea)
    legacy = ItemPayment.model_validate({
        "order_id": order.id,
        "item_id": f"{order.id}-0",
        "item_name": "Tea",
        "quantity": 3,
        "price_per_unit_cents": 10,
        "paid_amount_cents": 20,
        "is_paid": False,
    })
    assert legacy.paid_quantity == 2
    assert legacy.tracking == PaymentTracking.AMOUNT

    bill = make_bill(order, item_payments=[legacy], paid_cents=20)
    delta = _pay(bill, [order], (f"{order.id}-0", 1))

    assert delta.item_payments[0].paid_quantity == 3
    assert delta.item_payments[0].is_paid is True
    assert delta.item_payments[0].tracking == PaymentTracking.QUANTITY
    with pytest.raises(OverpaymentError):
        _pay(bill.model_copy(update={"item_payments": delta.item_payments}), [order], (f"{order.id}-0", 1))


def test_legacy_flag_entry_counts_as_fully_paid():
    legacy = ItemPayment.model_validate({
        "order_id": ObjectId(),
        "item_id": "x-0",
        "item_name": "Tea",
        "quantity": 3,
        "price_per_unit_cents": 0,
        "is_paid": True,
    })

    assert legacy.paid_quantity == 3
    assert legacy.tracking == PaymentTracking.FLAG


def test_session_installments():
    session_id = ObjectId()
    bill = make_bill(session_payments=[
        SessionPayment(session_id=session_id, session_cost_cents=1000, remaining_cents=1000)
    ])

    delta = apply_session_payment(bill, str(session_id), 400, "card", STAFF_ID, now=NOW)

    assert delta.session_payments[0].paid_cents == 400
    assert delta.remaining_after_cents == 600
    assert delta.paid_cents == 400
    assert delta.record.type == "partial-session"
    assert bill.session_payments[0].paid_cents == 0

    bill.session_payments = delta.session_payments
    with pytest.raises(OverpaymentError):
        apply_session_payment(bill, str(session_id), 700, "card", STAFF_ID, now=NOW)
    with pytest.raises(PaymentValidationError):
        apply_session_payment(bill, str(session_id), 0, "card", STAFF_ID, now=NOW)
    with pytest.raises(PaymentValidationError):
        apply_session_payment(bill, str(ObjectId()), 100, "card", STAFF_ID, now=NOW)


def test_missing_entries_materializes_unknown_items():
    tea, cake = make_item("Tea", 10, 3), make_item("Cake", 50, 1)
    order = make_order(tea, cake)
    bill = make_bill(order)
    bill.item_payments = _pay(bill, [order], (_row(order, tea), 1)).item_payments

    missing = missing_entries(bill, [order])

    assert [e.item_id for e in missing] == [_row(order, cake)]
    assert missing[0].paid_quantity == 0
    assert missing[0].total_price_cents == 50


def test_enforce_entry_integrity_clamps_and_recomputes():
    entries = [
        ItemPayment(order_id=ObjectId(), item_id="a-0", item_name="Tea", quantity=3,
                    paid_quantity=5, price_per_unit_cents=10, paid_amount_cents=50),
        ItemPayment(order_id=ObjectId(), item_id="b-0", item_name="Cake", quantity=2,
                    paid_quantity=1, price_per_unit_cents=50, paid_amount_cents=50),
    ]

    corrected = enforce_entry_integrity(entries)

    assert corrected == 1
    assert (entries[0].paid_quantity, entries[0].paid_amount_cents, entries[0].is_paid) == (3, 30, True)
    assert (entries[1].paid_quantity, entries[1].paid_amount_cents, entries[1].is_paid) == (1, 50, False)


def test_legacy_amount_rounds_half_up():
    legacy = ItemPayment.model_validate({
        "order_id": ObjectId(),
        "item_id": "x-0",
        "item_name": "Tea",
        "quantity": 3,
        "price_per_unit_cents": 10,
        "paid_amount_cents": 25,
    })

    assert legacy.paid_quantity == 3
    assert legacy.tracking == PaymentTracking.AMOUNT


def test_sync_entries_follows_quantity_edits_without_losing_paid_units():
    tea = make_item("Tea", 10, 3)
    order = make_order(tea)
    bill = make_bill(order)
    entries = missing_entries(bill, [order])
    entries[0].paid_quantity = 2
    entries[0].paid_amount_cents = 20

    tea.quantity = 5
    sync_entries(entries, live_items([order]))
    assert (entries[0].quantity, entries[0].total_price_cents, entries[0].is_paid) == (5, 50, False)

    tea.quantity = 1
    sync_entries(entries, live_items([order]))
    assert (entries[0].quantity, entries[0].paid_quantity, entries[0].is_paid) == (2, 2, True)
