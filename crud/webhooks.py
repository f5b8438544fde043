# crud/webhooks.py

from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models


def purge_expired(db: Session) -> int:
    deleted = (
        db.query(models.ProcessedWebhook)
        .filter(models.ProcessedWebhook.expires_at < models.utcnow())
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted


def is_processed(db: Session, webhook_id: str) -> bool:
    """True if this delivery id was handled successfully within its TTL."""
    purge_expired(db)
    return db.query(models.ProcessedWebhook.id).filter(models.ProcessedWebhook.id == webhook_id).first() is not None


def mark_processed(db: Session, webhook_id: str, topic: str, ttl_seconds: int) -> None:
    """Recorded only after the handler succeeded, so a failed delivery is retried for real."""
    db.add(models.ProcessedWebhook(
        id=webhook_id,
        topic=topic,
        expires_at=models.utcnow() + timedelta(seconds=ttl_seconds),
    ))
    try:
        db.commit()
    except IntegrityError:
        # A concurrent redelivery got there first.
        db.rollback()
