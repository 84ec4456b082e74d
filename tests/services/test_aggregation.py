from billdesk.models.bill import BillStatus, ItemPayment
from billdesk.models.order import OrderStatus
from billdesk.services.aggregation import aggregate_items, constituents_of, is_fully_settled
from billdesk.services.reconciliation import live_items
from conftest import make_item, make_order


def _entry(order, item, paid_quantity):
    return ItemPayment(
        order_id=order.id,
        item_id=f"{order.id}-{item.item_id}",
        item_name=item.name,
        quantity=item.quantity,
        paid_quantity=paid_quantity,
        price_per_unit_cents=item.price_cents,
        paid_amount_cents=paid_quantity * item.price_cents,
    )


def test_identical_items_across_orders_merge_into_one_row():
    first = make_order(make_item("Tea", 10, 2))
    second = make_order(make_item("Tea", 10, 2), make_item("Cake", 50, 1))

    rows = aggregate_items([first, second])

    assert [(r.name, r.total_quantity) for r in rows] == [("Tea", 4), ("Cake", 1)]
    assert rows[0].id == f"{first.id}-{first.items[0].item_id}"
    assert rows[0].order_id == str(first.id)


def test_total_quantity_is_conserved():
    orders = [
        make_order(make_item("Tea", 10, 3), make_item("Latte", 45, 1, addons=[("Oat", 5)])),
        make_order(make_item("tea", 10, 2), make_item("Latte", 45, 2)),
        make_order(make_item("Scone", 30, 4), status=OrderStatus.CANCELLED),
    ]

    rows = aggregate_items(orders)

    live_quantity = sum(i.quantity for o in orders if not o.is_cancelled for i in o.items)
    assert sum(r.total_quantity for r in rows) == live_quantity
    assert all(r.name != "Scone" for r in rows)


def test_paid_quantity_is_capped_at_current_quantity():
    item = make_item("Tea", 10, 2)
    order = make_order(item)
    stale = _entry(order, item, 5)

    rows = aggregate_items([order], [stale], BillStatus.PARTIAL, 50, 20)

    assert rows[0].paid_quantity == 2
    assert rows[0].remaining_quantity == 0
    assert 0 <= rows[0].paid_quantity <= rows[0].total_quantity


def test_settled_bill_reports_everything_paid():
    item = make_item("Tea", 10, 3)
    order = make_order(item)

    rows = aggregate_items([order], [], BillStatus.PAID, 30, 30)

    assert rows[0].paid_quantity == rows[0].total_quantity == 3
    assert rows[0].remaining_quantity == 0


def test_settled_fast_path_requires_paid_covering_total():
    assert is_fully_settled(BillStatus.PAID, 30, 30)
    assert not is_fully_settled(BillStatus.PAID, 20, 30)
    assert not is_fully_settled(BillStatus.PARTIAL, 30, 30)


def test_deleted_item_payment_does_not_spill_onto_same_key():
    paid_item = make_item("Tea", 10, 3)
    other = make_item("Tea", 10, 2)
    first, second = make_order(paid_item), make_order(other)
    ledger = [_entry(first, paid_item, 1)]

    # The paid item is removed from its order
    first.items = []
    rows = aggregate_items([first, second], ledger, BillStatus.PARTIAL, 10, 20)

    assert len(rows) == 1
    assert rows[0].total_quantity == 2
    assert rows[0].paid_quantity == 0


def test_group_vanishes_when_all_constituents_are_gone():
    item = make_item("Tea", 10, 3)
    order = make_order(item)
    ledger = [_entry(order, item, 1)]
    order.items = []

    assert aggregate_items([order], ledger, BillStatus.PARTIAL, 10, 0) == []


def test_constituents_of_resolves_current_group():
    a, b = make_item("Tea", 10, 2), make_item("Tea", 10, 1)
    first, second = make_order(a), make_order(b, make_item("Cake", 50, 1))
    live = live_items([first, second])

    group = constituents_of(f"{first.id}-{a.item_id}", live)

    assert [item.quantity for item in group] == [2, 1]
    assert constituents_of("missing-0", live) is None
