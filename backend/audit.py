"""
Audit sink for sensitive state transitions.

Entries record who did what, when, on whose behalf, and the before/after
state. They are append-only; the only removal path is retention cleanup.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


def log_audit(
    db: Session,
    user_id: str,
    action: models.AuditAction,
    entity_type: str,
    entity_id: Optional[str] = None,
    target_user_id: Optional[str] = None,
    previous_state: Optional[Dict[str, Any]] = None,
    new_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> models.AuditLog:
    """
    Append an audit entry.

    The entry joins the caller's unit of work so it is committed together with
    the state change it describes.

    Args:
        db: Database session
        user_id: User who performed the action
        action: Audited action
        entity_type: Affected entity type (task, project, Permission, ...)
        entity_id: ID of the affected entity
        target_user_id: Owning user when acting on their behalf
        previous_state: JSON snapshot before the change
        new_state: JSON snapshot after the change
        metadata: Additional context (reason, client info)

    Returns:
        Created AuditLog instance
    """
    logger.debug(
        f"Audit: action={action.value}, user={user_id}, target={target_user_id}, "
        f"entity={entity_type}:{entity_id}"
    )

    entry = models.AuditLog(
        user_id=user_id,
        target_user_id=target_user_id,
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        previous_state=previous_state,
        new_state=new_state,
        audit_metadata=metadata,
    )
    db.add(entry)
    db.flush()

    return entry


def _apply_date_range(query, start_date: Optional[datetime], end_date: Optional[datetime]):
    if start_date is not None:
        query = query.filter(models.AuditLog.created_at >= ensure_utc(start_date))
    if end_date is not None:
        query = query.filter(models.AuditLog.created_at <= ensure_utc(end_date))
    return query


def find_by_entity(
    db: Session,
    entity_type: str,
    entity_id: str,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> List[models.AuditLog]:
    return (
        db.query(models.AuditLog)
        .filter(models.AuditLog.entity_type == entity_type, models.AuditLog.entity_id == entity_id)
        .order_by(models.AuditLog.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def find_by_user(
    db: Session,
    user_id: str,
    action: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> List[models.AuditLog]:
    """List entries performed by a user, newest first."""
    query = db.query(models.AuditLog).filter(models.AuditLog.user_id == user_id)
    if action:
        query = query.filter(models.AuditLog.action == action)
    query = _apply_date_range(query, start_date, end_date)
    return query.order_by(models.AuditLog.created_at.desc()).offset(offset).limit(limit).all()


def find_by_action(
    db: Session,
    action: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> List[models.AuditLog]:
    query = db.query(models.AuditLog).filter(models.AuditLog.action == action)
    query = _apply_date_range(query, start_date, end_date)
    return query.order_by(models.AuditLog.created_at.desc()).offset(offset).limit(limit).all()


def get_stats(
    db: Session,
    user_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Count a user's audit entries per action, most frequent first."""
    count = func.count(models.AuditLog.id)
    query = db.query(models.AuditLog.action, count).filter(models.AuditLog.user_id == user_id)
    query = _apply_date_range(query, start_date, end_date)
    rows = query.group_by(models.AuditLog.action).order_by(count.desc()).all()
    return [{"action": action, "count": int(total)} for action, total in rows]


def cleanup(db: Session, older_than: datetime) -> int:
    """
    Delete audit entries created before a cutoff (data retention).

    Returns:
        Number of deleted entries
    """
    deleted = (
        db.query(models.AuditLog)
        .filter(models.AuditLog.created_at < ensure_utc(older_than))
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Audit retention cleanup removed {deleted} entries older than {older_than.isoformat()}")
    return deleted
