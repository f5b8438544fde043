# jobs/cleanup.py

import logging
from datetime import timedelta
from typing import Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from crud import order as crud_order
from exceptions import StorageFailure
from locks import get_order_lock

logger = logging.getLogger("fulfiller.jobs.cleanup")


def run_retention_cleanup(db_factory, retention_days: int = 60) -> Dict:
    """
    Purges every order created more than `retention_days` ago together with
    its transfer records, refund ledger rows and line items. Each order is
    purged under its own lock and transaction.
    """
    cutoff = models.utcnow() - timedelta(days=retention_days)
    logger.info("Starting cleanup for orders created before %s", cutoff.isoformat())

    db: Session = db_factory()
    try:
        candidates = [(o.id, o.name) for o in crud_order.get_orders_created_before(db, cutoff)]
    finally:
        db.close()

    if not candidates:
        logger.info("No old data to clean up")
        return {"deleted": 0, "orders": []}

    purged: List[str] = []
    transfers = line_items = 0
    for order_id, name in candidates:
        with get_order_lock(order_id):
            db = db_factory()
            try:
                stats = crud_order.purge_order(db, order_id)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("Cleanup of order %s failed", name)
                raise StorageFailure(f"Cleanup of order {order_id} failed: {e}") from e
            finally:
                db.close()
        transfers += stats.transfers
        line_items += stats.line_items
        if stats.orders:
            purged.append(name)

    logger.info("Cleanup removed %d orders, %d line items, %d transfer items",
                len(purged), line_items, transfers)
    return {"deleted": len(purged), "orders": purged}


if __name__ == "__main__":
    from config import get_settings
    from database import create_db_engine, create_session_factory, init_db
    from main import configure_logging

    settings = get_settings()
    configure_logging(settings.log_level)
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    run_retention_cleanup(create_session_factory(engine), settings.retention_days)
