import pytest
from sqlalchemy.exc import SQLAlchemyError

import models
import schemas
from crud import order as crud_order
from crud import picker as crud_picker
from crud import transfer as crud_transfer
from exceptions import InvalidNotification, RemoteFetchFailure, StorageFailure
from factories import make_line_item, make_order, make_refund


def _snapshot(**kwargs):
    return schemas.OrderSnapshot.model_validate(make_order(**kwargs))


def _quantities(session_factory, order_id=5001):
    """{base id: [row quantities, oldest first]}"""
    db = session_factory()
    try:
        grouped = {}
        for row in crud_order.get_line_items(db, order_id):
            grouped.setdefault(row.shopify_line_item_id, []).append(row.quantity)
        return grouped
    finally:
        db.close()


def _state(session_factory, order_id=5001):
    db = session_factory()
    try:
        order = crud_order.get_order(db, order_id)
        rows = [
            (r.shopify_line_item_id, r.quantity, r.picker_status, r.packer_status)
            for r in crud_order.get_line_items(db, order_id)
        ]
        transfers = [(t.line_item_id, t.quantity, t.status) for t in crud_transfer.get_transfers_for_order(db, order_id)]
        return (order.total_quantity if order else None), rows, transfers
    finally:
        db.close()


def test_created_order_gets_one_row_per_active_item(reconciler, session_factory):
    result = reconciler.on_order_created(_snapshot(line_items=[
        make_line_item(100, 5),
        make_line_item(200, 2),
    ]))

    assert result.action == "created"
    assert result.inserted == 2
    assert _quantities(session_factory) == {100: [5], 200: [2]}

    db = session_factory()
    order = crud_order.get_order(db, 5001)
    assert order.total_quantity == 7
    assert order.name == "#1001"
    assert order.status == models.ORDER_PACKING
    assert all(li.picker_status == models.PICKING and li.packer_status == models.PACKING
               for li in order.line_items)
    db.close()


def test_created_order_folds_refunds_and_skips_fully_refunded(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(
        line_items=[make_line_item(100, 5), make_line_item(200, 1)],
        refunds=[make_refund(900, (100, 2), (200, 1))],
    ))

    assert _quantities(session_factory) == {100: [3]}


def test_same_snapshot_twice_is_idempotent(reconciler, session_factory):
    snap = _snapshot(
        line_items=[make_line_item(100, 4), make_line_item(200, 3)],
        refunds=[make_refund(900, (200, 1))],
    )
    reconciler.on_order_updated(snap)
    first = _state(session_factory)

    result = reconciler.on_order_updated(snap)

    assert _state(session_factory) == first
    assert (result.inserted, result.deleted, result.shrunk) == (0, 0, 0)


def test_increase_adds_a_new_fragment_and_keeps_progress(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2)]))
    db = session_factory()
    row = crud_order.get_line_items(db, 5001)[0]
    crud_picker.update_picker_status(db, row.id, models.PICKED)
    db.close()

    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 5)]))

    _, rows, _ = _state(session_factory)
    assert rows == [
        (100, 2, models.PICKED, models.PACKING),
        (100, 3, models.PICKING, models.PACKING),
    ]


def test_decrease_consumes_newest_row_first(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 5)]))
    db = session_factory()
    row = crud_order.get_line_items(db, 5001)[0]
    crud_picker.split_line_item(db, row.id, 3)
    db.close()
    assert _quantities(session_factory) == {100: [3, 2]}

    result = reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 4)]))

    _, rows, _ = _state(session_factory)
    assert rows == [
        (100, 3, models.PICKED, models.PACKING),
        (100, 1, models.MISSING, models.PACKING),
    ]
    assert result.shrunk == 1 and result.deleted == 0


def test_decrease_spanning_rows_deletes_then_shrinks(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2)]))
    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 5)]))
    assert _quantities(session_factory) == {100: [2, 3]}

    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 1)]))

    assert _quantities(session_factory) == {100: [1]}


def test_removed_item_loses_every_row(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2), make_line_item(200, 1)]))
    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 4), make_line_item(200, 1)]))

    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(200, 1)]))

    assert _quantities(session_factory) == {200: [1]}
    total, _, _ = _state(session_factory)
    assert total == 1


def test_quantities_converge_on_active_quantities(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 1), make_line_item(200, 6)]))
    snap = _snapshot(
        line_items=[make_line_item(100, 4), make_line_item(200, 6), make_line_item(300, 2)],
        refunds=[make_refund(900, (200, 5)), make_refund(901, (300, 2))],
    )

    reconciler.on_order_updated(snap)

    quantities = _quantities(session_factory)
    assert {k: sum(v) for k, v in quantities.items()} == {100: 4, 200: 1}
    assert 300 not in quantities


def test_shrinking_keeps_transfer_records(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 3)]))
    db = session_factory()
    row_id = crud_order.get_line_items(db, 5001)[0].id
    crud_picker.update_picker_status(db, row_id, models.MISSING)
    db.close()

    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 2)]))

    _, rows, transfers = _state(session_factory)
    assert rows == [(100, 2, models.MISSING, models.PACKING)]
    assert transfers == [(row_id, 3, models.TRANSFERRING)]


def test_deleted_row_takes_only_transferring_records_with_it(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 3)]))
    db = session_factory()
    original = crud_order.get_line_items(db, 5001)[0]
    missing_row = crud_picker.split_line_item(db, original.id, 1)
    transfer = crud_transfer.get_transfers_for_order(db, 5001)[0]
    crud_transfer.split_transfer(db, transfer.id, schemas.TransferSplit(transfer_quantity=1, transfer_from="03"))
    missing_row_id = missing_row.id
    db.close()

    _, _, transfers = _state(session_factory)
    assert sorted(t[2] for t in transfers) == [models.TRANSFERRING, models.WAITING]

    result = reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 1)]))

    _, rows, transfers = _state(session_factory)
    assert rows == [(100, 1, models.PICKED, models.PACKING)]
    assert transfers == [(missing_row_id, 1, models.WAITING)]
    assert result.transfers_deleted == 1


def test_warehouse_fields_survive_updates(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 1)]))
    db = session_factory()
    order = crud_order.get_order(db, 5001)
    order.status = models.ORDER_HOLDING
    order.note = "call customer"
    db.commit()
    db.close()

    reconciler.on_order_updated(_snapshot(
        line_items=[make_line_item(100, 1)],
        name="#1001-A",
        shipping_lines=[{"code": "EXP", "title": "Express"}],
    ))

    db = session_factory()
    order = crud_order.get_order(db, 5001)
    assert (order.status, order.note) == (models.ORDER_HOLDING, "call customer")
    assert (order.name, order.shipping_code) == ("#1001-A", "EXP")
    db.close()


def test_update_for_unknown_order_creates_it(reconciler, session_factory):
    result = reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 2)]))

    assert result.action == "created"
    assert _quantities(session_factory) == {100: [2]}


def test_cancelled_snapshot_in_update_purges(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2)]))

    result = reconciler.on_order_updated(_snapshot(
        line_items=[make_line_item(100, 2)],
        cancelled_at="2026-01-01T10:00:00Z",
    ))

    assert result.action == "cancelled"
    assert _state(session_factory) == (None, [], [])


def test_end_to_end_create_decrease_refund_remove(reconciler, session_factory):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 5)]))
    assert _quantities(session_factory) == {100: [5]}

    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 3)]))
    assert _quantities(session_factory) == {100: [3]}

    reconciler.on_refund_created(schemas.RefundNotification.model_validate(make_refund(900, (100, 1))))
    assert _quantities(session_factory) == {100: [2]}

    reconciler.on_order_updated(_snapshot(line_items=[make_line_item(100, 0)]))
    assert _quantities(session_factory) == {}
    total, _, _ = _state(session_factory)
    assert total == 0


def test_edit_committed_refetches_and_marks_edited(reconciler, session_factory, shopify):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2)]))
    shopify.orders[5001] = make_order(line_items=[make_line_item(100, 2), make_line_item(200, 1)])

    edit = schemas.OrderEditRef.model_validate(
        {"order_edit": {"id": 1, "order_id": 5001, "committed_at": "2026-03-01T12:00:00Z"}}
    )
    result = reconciler.on_order_edit_committed(edit)

    assert result.inserted == 1
    assert _quantities(session_factory) == {100: [2], 200: [1]}
    db = session_factory()
    assert crud_order.get_order(db, 5001).is_edited is True
    db.close()


def test_uncommitted_edit_is_a_noop(reconciler, shopify):
    result = reconciler.on_order_edit_committed(schemas.OrderEditRef(order_id=5001))

    assert result.action == "ignored"
    assert shopify.calls == []


def test_edit_without_order_id_is_rejected(reconciler):
    with pytest.raises(InvalidNotification):
        reconciler.on_order_edit_committed(schemas.OrderEditRef(committed_at="2026-03-01T12:00:00Z"))


def test_edit_fetch_failure_leaves_state_untouched(reconciler, session_factory, shopify):
    reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2)]))
    before = _state(session_factory)
    shopify.fail_orders = True

    with pytest.raises(RemoteFetchFailure) as exc:
        reconciler.on_order_edit_committed(
            schemas.OrderEditRef(order_id=5001, committed_at="2026-03-01T12:00:00Z")
        )

    assert exc.value.retryable is True
    assert _state(session_factory) == before


def test_storage_error_rolls_back_the_whole_pass(reconciler, session_factory, monkeypatch):
    def boom(db, order):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(crud_order, "recompute_total_quantity", boom)

    with pytest.raises(StorageFailure):
        reconciler.on_order_created(_snapshot(line_items=[make_line_item(100, 2)]))

    assert _state(session_factory) == (None, [], [])
