# services/reconciliation.py
"""
Order reconciliation engine.

Each public ``on_*`` method handles one kind of Shopify notification and
runs one reconciliation pass: it takes the order's lock, fetches
enrichment (no writes yet), applies every mutation inside a single
session and commits. A database error rolls back the whole pass and is
re-raised as StorageFailure; enrichment failures only degrade the data.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Iterator, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from crud import order as crud_order
from exceptions import InvalidNotification, RemoteFetchFailure, StorageFailure
from locks import get_order_lock
from services.enrichment import EnrichmentService, LineItemDetail
from shopify_service import ShopifyService, ShopifyAPIError

logger = logging.getLogger("fulfiller.reconciliation")


@dataclass
class ReconcileResult:
    order_id: int
    order_name: Optional[str] = None
    action: str = "noop"
    inserted: int = 0
    deleted: int = 0
    shrunk: int = 0
    transfers_deleted: int = 0
    enrichment_failures: int = 0
    success: bool = True

    def absorb(self, stats: crud_order.RemovalStats) -> None:
        self.deleted += stats.deleted_rows
        self.shrunk += stats.shrunk_rows
        self.transfers_deleted += stats.transfers_deleted

    def to_dict(self) -> dict:
        return asdict(self)


class OrderReconciler:
    def __init__(self, db_factory: Callable[[], Session], enrichment: EnrichmentService,
                 shopify: Optional[ShopifyService] = None):
        self.db_factory = db_factory
        self.enrichment = enrichment
        self.shopify = shopify

    @contextmanager
    def _pass(self, order_id: int) -> Iterator[Session]:
        """One reconciliation pass: order lock held, one transaction, all or nothing."""
        with get_order_lock(order_id):
            db: Session = self.db_factory()
            try:
                yield db
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Reconciliation pass for order %s rolled back", order_id)
                raise StorageFailure(f"Order {order_id}: {e.__class__.__name__}: {e}") from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def _enrich_active(self, snapshot: schemas.OrderSnapshot, result: ReconcileResult) -> Dict[int, LineItemDetail]:
        # Re-fetched on every pass; the memo only spans this pass.
        memo: dict = {}
        details: Dict[int, LineItemDetail] = {}
        for active in snapshot.active_line_items():
            detail = self.enrichment.enrich_line_item(active.item, memo=memo)
            if detail.degraded:
                result.enrichment_failures += 1
            details[active.item.id] = detail
        return details

    # ---------------- entry points ----------------

    def on_order_created(self, snapshot: schemas.OrderSnapshot) -> ReconcileResult:
        if snapshot.is_cancelled or snapshot.is_fulfilled:
            return self._terminal(snapshot, "cancelled" if snapshot.is_cancelled else "fulfilled")
        return self._reconcile(snapshot)

    def on_order_updated(self, snapshot: schemas.OrderSnapshot) -> ReconcileResult:
        if snapshot.is_cancelled:
            return self.on_order_cancelled(snapshot)
        if snapshot.is_fulfilled:
            return self.on_order_fulfilled(snapshot)
        return self._reconcile(snapshot)

    def on_order_edit_committed(self, edit: schemas.OrderEditRef) -> ReconcileResult:
        if not edit.order_id:
            raise InvalidNotification("Order edit notification is missing order_id")
        if edit.committed_at is None:
            logger.info("Order edit %s for order %s not committed, ignoring", edit.id, edit.order_id)
            return ReconcileResult(order_id=edit.order_id, action="ignored")

        snapshot = self._fetch_order(edit.order_id)
        logger.info("Got fresh data for order %s (%d line items)", snapshot.display_name, len(snapshot.line_items))
        if snapshot.is_cancelled:
            return self.on_order_cancelled(snapshot)
        if snapshot.is_fulfilled:
            return self.on_order_fulfilled(snapshot)
        return self._reconcile(snapshot, mark_edited=True)

    def on_refund_created(self, refund: schemas.RefundNotification) -> ReconcileResult:
        result = ReconcileResult(order_id=refund.order_id)
        key = crud_order.refund_key(refund.order_id, refund)

        with self._pass(refund.order_id) as db:
            order = crud_order.get_order(db, refund.order_id)
            if order is None:
                logger.info("Refund %s for unknown order %s, nothing to trim", key, refund.order_id)
                return result
            result.order_name = order.name
            if crud_order.refund_already_applied(db, key):
                logger.info("Refund %s already applied to %s", key, order.name)
                return result

            for line_item_id, qty in crud_order.refund_quantities(refund).items():
                if qty <= 0:
                    continue
                crud_order.record_refund_line(db, key, order.id, line_item_id, qty)
                rows = crud_order.get_line_items(db, order.id, base_id=line_item_id,
                                                 newest_first=True, for_update=True)
                if not rows:
                    logger.info("Refund %s: no local rows for line item %s, already satisfied", key, line_item_id)
                    continue

                local = sum(r.quantity for r in rows)
                remote_quantity = max((r.remote_quantity or 0) for r in rows)
                if remote_quantity:
                    expected = max(0, remote_quantity - crud_order.refunded_total(db, order.id, line_item_id))
                    to_remove = min(qty, max(0, local - expected))
                else:
                    to_remove = min(qty, local)

                if to_remove <= 0:
                    logger.info("Refund %s: line item %s already at %s", key, line_item_id, local)
                    continue
                logger.info("Refund %s: line item %s %s -> %s", key, line_item_id, local, local - to_remove)
                result.absorb(crud_order.remove_quantity(db, rows, to_remove))

            crud_order.recompute_total_quantity(db, order)
            result.action = "refunded"
        return result

    def on_order_cancelled(self, snapshot: schemas.OrderSnapshot) -> ReconcileResult:
        return self._terminal(snapshot, "cancelled")

    def on_order_fulfilled(self, snapshot: schemas.OrderSnapshot) -> ReconcileResult:
        return self._terminal(snapshot, "fulfilled")

    def purge(self, order_id: int, reason: str = "deleted") -> ReconcileResult:
        """Removes an order and everything hanging off it, whatever the transfer stage."""
        result = ReconcileResult(order_id=order_id)
        with self._pass(order_id) as db:
            order = crud_order.get_order(db, order_id)
            result.order_name = order.name if order else None
            stats = crud_order.purge_order(db, order_id)
            result.deleted = stats.line_items
            result.transfers_deleted = stats.transfers
            result.action = reason if stats.orders else "noop"
        logger.info("Order %s %s - removed %d line items and %d transfer items",
                    result.order_name or order_id, reason, result.deleted, result.transfers_deleted)
        return result

    # ---------------- internals ----------------

    def _terminal(self, snapshot: schemas.OrderSnapshot, reason: str) -> ReconcileResult:
        result = self.purge(snapshot.id, reason)
        result.order_name = result.order_name or snapshot.display_name
        return result

    def _fetch_order(self, order_id: int) -> schemas.OrderSnapshot:
        if self.shopify is None:
            raise RemoteFetchFailure(f"Cannot fetch order {order_id}: Shopify client not configured", status_code=None)
        try:
            raw = self.shopify.get_order(order_id)
        except ShopifyAPIError as e:
            raise RemoteFetchFailure(f"Fetching order {order_id} failed: {e}", status_code=e.status_code) from e
        if not raw:
            raise RemoteFetchFailure(f"Order {order_id} not found in Shopify", status_code=404)
        try:
            return schemas.OrderSnapshot.model_validate(raw)
        except ValidationError as e:
            raise RemoteFetchFailure(f"Order {order_id} payload from Shopify is invalid: {e}") from e

    def _reconcile(self, snapshot: schemas.OrderSnapshot, mark_edited: bool = False) -> ReconcileResult:
        result = ReconcileResult(order_id=snapshot.id, order_name=snapshot.display_name)
        details = self._enrich_active(snapshot, result)

        with self._pass(snapshot.id) as db:
            order = crud_order.get_order(db, snapshot.id)
            if order is None:
                order = crud_order.create_order(db, snapshot)
                result.action = "created"
            else:
                crud_order.apply_snapshot_fields(order, snapshot)
                result.action = "updated"
            if mark_edited:
                order.is_edited = True

            crud_order.record_snapshot_refunds(db, snapshot)
            self._diff(db, order, snapshot, details, result)
            crud_order.recompute_total_quantity(db, order)
            order.fulfillment_status = snapshot.normalized_fulfillment_status

        logger.info("Order %s %s: +%d rows, -%d rows, %d shrunk, %d transfers dropped",
                    result.order_name, result.action, result.inserted, result.deleted,
                    result.shrunk, result.transfers_deleted)
        return result

    def _diff(self, db: Session, order: models.Order, snapshot: schemas.OrderSnapshot,
              details: Dict[int, LineItemDetail], result: ReconcileResult) -> None:
        active_items = snapshot.active_line_items()
        active_ids = {a.item.id for a in active_items}
        local_rows = crud_order.get_line_items(db, order.id, newest_first=True, for_update=True)
        groups = crud_order.group_by_base(local_rows)

        for active in active_items:
            item = active.item
            rows = groups.get(item.id, [])
            local = sum(r.quantity for r in rows)
            for row in rows:
                row.remote_quantity = int(item.quantity or 0)

            if not rows:
                logger.debug("Line item %s: NEW ITEM qty=%s", item.id, active.active_quantity)
                crud_order.insert_line_item(db, order, item, active.active_quantity, self._detail_for(details, item))
                result.inserted += 1
            elif local < active.active_quantity:
                diff = active.active_quantity - local
                logger.debug("Line item %s: INCREASE %s -> %s (new fragment of %s)",
                             item.id, local, active.active_quantity, diff)
                crud_order.insert_line_item(db, order, item, diff, self._detail_for(details, item))
                result.inserted += 1
            elif local > active.active_quantity:
                logger.debug("Line item %s: DECREASE %s -> %s", item.id, local, active.active_quantity)
                result.absorb(crud_order.remove_quantity(db, rows, local - active.active_quantity))
            else:
                logger.debug("Line item %s: NO CHANGE qty=%s", item.id, local)

        for base_id, rows in groups.items():
            if base_id in active_ids:
                continue
            logger.debug("Line item %s: ITEM REMOVED (%d rows)", base_id, len(rows))
            result.absorb(crud_order.remove_quantity(db, rows, sum(r.quantity for r in rows)))

    def _detail_for(self, details: Dict[int, LineItemDetail], item: schemas.RemoteLineItem) -> LineItemDetail:
        detail = details.get(item.id)
        if detail is None:
            detail = LineItemDetail.from_payload(item, degraded=True)
        return detail
