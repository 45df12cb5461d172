"""
Offline-first synchronization.

Sync strategy:
1. The client sends its local changes, each tagged with the sync_version it
   last observed for that entity.
2. The server applies a change only if that version still matches the stored
   one, incrementing it by one. Any mismatch is returned as a conflict
   (client item + authoritative server item) for the client to resolve; the
   server never guesses intent on divergent edits.
3. Items are independent: one failing item is reported in `errors` and never
   blocks the rest of the batch.

Also provides catch-up reads (changes since a timestamp, tombstones included)
and a durable retry queue for operations that must survive restarts.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import schemas
from errors import NotFoundError, InvalidStateError
from task_service import check_task_references
from time_utils import utc_now, ensure_utc, EPOCH
from versioning import find_owned, compare_and_set, soft_delete

logger = logging.getLogger(__name__)

# Per-item outcomes
SYNCED = "synced"
CONFLICT = "conflict"
DELETED = "deleted"

ERROR_CODES = {
    400: "INVALID_STATE",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    409: "CONFLICT",
}


class _EntitySync:
    """How one versioned entity type is validated, written and serialized."""

    def __init__(self, name, model, create_schema, update_schema, output_schema, conflict_schema):
        self.name = name
        self.model = model
        self.create_schema = create_schema
        self.update_schema = update_schema
        self.output_schema = output_schema
        self.conflict_schema = conflict_schema

    def values(self, schema, data: Dict[str, Any]) -> Dict[str, Any]:
        parsed = schema.model_validate(data)
        values = parsed.model_dump(exclude_unset=True)
        if "metadata" in values:
            values["task_metadata"] = values.pop("metadata")
        if values.get("priority") is not None:
            values["priority"] = int(values["priority"])
        for key in ("due_date", "completed_at"):
            if values.get(key) is not None:
                values[key] = ensure_utc(values[key])
        return values

    def check_references(self, db: Session, user_id: str, values: Dict[str, Any], entity_id: str) -> None:
        if self.model is models.Task:
            check_task_references(
                db,
                user_id,
                project_id=values.get("project_id"),
                parent_id=values.get("parent_id"),
                task_id=entity_id,
            )

    def stamp(self, values: Dict[str, Any]) -> Dict[str, Any]:
        if self.model is models.Task:
            values["last_synced_at"] = utc_now()
        return values

    def serialize(self, instance) -> BaseModel:
        return self.output_schema.model_validate(instance)


TASKS = _EntitySync(
    "task", models.Task, schemas.TaskSyncCreateData, schemas.TaskSyncData, schemas.Task, schemas.TaskConflict
)
PROJECTS = _EntitySync(
    "project", models.Project, schemas.ProjectSyncCreateData, schemas.ProjectSyncData, schemas.Project,
    schemas.ProjectConflict,
)


def _sync_create(db: Session, user_id: str, entity: _EntitySync, item: schemas.SyncItem) -> Tuple[str, Any]:
    existing = find_owned(db, entity.model, item.id, user_id, include_deleted=True)
    if existing is not None:
        if existing.deleted_at is not None:
            logger.info(f"Create for tombstoned {entity.name} {item.id}, reporting conflict")
            return CONFLICT, existing
        if existing.sync_version != item.sync_version:
            return CONFLICT, existing
        # Replay of a create that was already applied
        logger.debug(f"{entity.name} {item.id} already synced at version {existing.sync_version}")
        return SYNCED, existing

    values = entity.values(entity.create_schema, item.data)
    entity.check_references(db, user_id, values, item.id)

    instance = entity.model(id=item.id, user_id=user_id, sync_version=1, **entity.stamp(values))
    db.add(instance)
    db.commit()
    db.refresh(instance)

    logger.info(f"{entity.name} {item.id} created via sync for user {user_id}")
    return SYNCED, instance


def _sync_update(db: Session, user_id: str, entity: _EntitySync, item: schemas.SyncItem) -> Tuple[str, Any]:
    existing = find_owned(db, entity.model, item.id, user_id)
    if existing is None:
        raise NotFoundError(f"{entity.name.capitalize()} {item.id} not found")

    if existing.sync_version != item.sync_version:
        logger.info(
            f"Conflict on {entity.name} {item.id}: client version {item.sync_version}, "
            f"server version {existing.sync_version}"
        )
        return CONFLICT, existing

    values = entity.values(entity.update_schema, item.data)
    entity.check_references(db, user_id, values, item.id)

    if not compare_and_set(db, entity.model, item.id, user_id, item.sync_version, entity.stamp(values)):
        # Another writer got in between the read and the write
        db.rollback()
        current = find_owned(db, entity.model, item.id, user_id, include_deleted=True)
        if current is None:
            raise NotFoundError(f"{entity.name.capitalize()} {item.id} not found")
        return CONFLICT, current

    db.commit()
    db.refresh(existing)
    return SYNCED, existing


def _sync_delete(db: Session, user_id: str, entity: _EntitySync, item: schemas.SyncItem) -> Tuple[str, Any]:
    existing = find_owned(db, entity.model, item.id, user_id)
    if existing is None:
        logger.debug(f"{entity.name} {item.id} already deleted")
        return DELETED, None

    if existing.sync_version != item.sync_version:
        return CONFLICT, existing

    if not soft_delete(db, entity.model, item.id, user_id, item.sync_version):
        db.rollback()
        current = find_owned(db, entity.model, item.id, user_id, include_deleted=True)
        if current is None or current.deleted_at is not None:
            return DELETED, None
        return CONFLICT, current

    db.commit()
    logger.info(f"{entity.name} {item.id} deleted via sync for user {user_id}")
    return DELETED, None


_HANDLERS = {
    models.SyncOperation.create: _sync_create,
    models.SyncOperation.update: _sync_update,
    models.SyncOperation.delete: _sync_delete,
}


def _sync_items(db: Session, user_id: str, entity: _EntitySync, items: List[schemas.SyncItem], result) -> None:
    for item in items:
        try:
            outcome, instance = _HANDLERS[item.operation](db, user_id, entity, item)
        except HTTPException as e:
            db.rollback()
            logger.info(f"Failed to sync {entity.name} {item.id} ({item.operation.value}): {e.detail}")
            result.errors.append(schemas.SyncItemError(
                id=item.id,
                operation=item.operation,
                error=str(e.detail),
                error_code=ERROR_CODES.get(e.status_code, "REJECTED"),
            ))
            continue
        except ValidationError as e:
            db.rollback()
            logger.info(f"Invalid data for {entity.name} {item.id}: {e.error_count()} error(s)")
            result.errors.append(schemas.SyncItemError(
                id=item.id,
                operation=item.operation,
                error="; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()),
                error_code="VALIDATION_ERROR",
            ))
            continue
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Integrity error syncing {entity.name} {item.id}: {e.orig}")
            result.errors.append(schemas.SyncItemError(
                id=item.id,
                operation=item.operation,
                error=f"{entity.name.capitalize()} {item.id} could not be stored",
                error_code="INTEGRITY_ERROR",
            ))
            continue
        except Exception:
            db.rollback()
            logger.exception(f"Failed to sync {entity.name} {item.id}")
            result.errors.append(schemas.SyncItemError(
                id=item.id,
                operation=item.operation,
                error="Internal error",
                error_code="INTERNAL_ERROR",
            ))
            continue

        if outcome == CONFLICT:
            result.conflicts.append(entity.conflict_schema(
                client_version=item,
                server_version=entity.serialize(instance),
            ))
        elif outcome == SYNCED:
            result.synced.append(entity.serialize(instance))


def sync(db: Session, user_id: str, payload: schemas.SyncRequest) -> schemas.SyncResult:
    """
    Apply a batch of client changes for one user.

    Projects are processed before tasks so that a task created offline inside a
    project created offline resolves its project in the same request.

    Args:
        db: Database session
        user_id: Caller; every item is scoped to this user's data
        payload: Client batch

    Returns:
        Per entity type: synced entities, conflicts and per-item errors
    """
    logger.info(
        f"Sync for user {user_id}: {len(payload.tasks)} task item(s), "
        f"{len(payload.projects)} project item(s), last_sync_at={payload.last_sync_at}"
    )

    result = schemas.SyncResult(server_timestamp=utc_now())
    _sync_items(db, user_id, PROJECTS, payload.projects, result.projects)
    _sync_items(db, user_id, TASKS, payload.tasks, result.tasks)

    logger.info(
        f"Sync for user {user_id} finished: "
        f"tasks synced={len(result.tasks.synced)} conflicts={len(result.tasks.conflicts)} "
        f"errors={len(result.tasks.errors)}; "
        f"projects synced={len(result.projects.synced)} conflicts={len(result.projects.conflicts)} "
        f"errors={len(result.projects.errors)}"
    )
    return result


def get_changes_since(db: Session, user_id: str, since: Optional[datetime] = None) -> schemas.ChangesResponse:
    """
    Everything changed after `since`, soft-deleted tombstones included.

    Used for catch-up after long offline periods and for first-time bootstrap
    (no `since`).
    """
    since = ensure_utc(since) if since else EPOCH
    server_timestamp = utc_now()
    logger.debug(f"Fetching changes for user {user_id} since {since.isoformat()}")

    tasks = (
        db.query(models.Task)
        .filter(models.Task.user_id == user_id, models.Task.updated_at > since)
        .order_by(models.Task.updated_at.asc())
        .all()
    )
    projects = (
        db.query(models.Project)
        .filter(models.Project.user_id == user_id, models.Project.updated_at > since)
        .order_by(models.Project.updated_at.asc())
        .all()
    )

    logger.debug(f"User {user_id}: {len(tasks)} changed task(s), {len(projects)} changed project(s)")
    return schemas.ChangesResponse(
        tasks=[schemas.Task.model_validate(t) for t in tasks],
        projects=[schemas.Project.model_validate(p) for p in projects],
        server_timestamp=server_timestamp,
    )


# ============== Durable retry queue ==============

def queue_operation(
    db: Session,
    user_id: str,
    entity_type: str,
    entity_id: str,
    operation: models.SyncOperation,
    payload: Dict[str, Any],
    client_timestamp: Optional[datetime] = None,
) -> models.SyncQueueItem:
    """Persist an operation for later processing. Items start pending."""
    item = models.SyncQueueItem(
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        operation=models.SyncOperation(operation),
        payload=payload,
        client_timestamp=ensure_utc(client_timestamp) if client_timestamp else utc_now(),
        status=models.SyncStatus.pending,
        retry_count=0,
    )
    db.add(item)
    db.commit()
    db.refresh(item)

    logger.info(f"Queued {item.operation.value} of {entity_type} {entity_id} for user {user_id} (item {item.id})")
    return item


def get_pending_operations(db: Session, user_id: str) -> List[models.SyncQueueItem]:
    """Pending queue items for a user, oldest first."""
    return (
        db.query(models.SyncQueueItem)
        .filter(
            models.SyncQueueItem.user_id == user_id,
            models.SyncQueueItem.status == models.SyncStatus.pending,
        )
        .order_by(models.SyncQueueItem.created_at.asc())
        .all()
    )


def _load_open_queue_item(db: Session, user_id: str, item_id: str) -> models.SyncQueueItem:
    item = (
        db.query(models.SyncQueueItem)
        .filter(models.SyncQueueItem.id == item_id, models.SyncQueueItem.user_id == user_id)
        .first()
    )
    if item is None:
        raise NotFoundError("Sync queue item not found")

    # completed is terminal
    if item.status == models.SyncStatus.completed:
        logger.info(f"Sync queue item {item_id} is already completed")
        raise InvalidStateError("Sync queue item already completed")

    return item


def mark_completed(db: Session, user_id: str, item_id: str) -> models.SyncQueueItem:
    item = _load_open_queue_item(db, user_id, item_id)
    item.status = models.SyncStatus.completed
    item.processed_at = utc_now()
    db.commit()
    db.refresh(item)

    logger.info(f"Sync queue item {item_id} completed")
    return item


def mark_failed(db: Session, user_id: str, item_id: str, error: str) -> models.SyncQueueItem:
    """
    Record a failed attempt: retry_count += 1 and the error message is kept.

    There is no retry cap; callers decide when to stop retrying.
    """
    item = _load_open_queue_item(db, user_id, item_id)
    item.status = models.SyncStatus.failed
    item.retry_count = (item.retry_count or 0) + 1
    item.error_message = error
    item.processed_at = utc_now()
    db.commit()
    db.refresh(item)

    logger.info(f"Sync queue item {item_id} failed (attempt {item.retry_count}): {error}")
    return item


def mark_conflict(db: Session, user_id: str, item_id: str, conflict_data: Dict[str, Any]) -> models.SyncQueueItem:
    """Park a queue item whose operation hit a version conflict, keeping both states."""
    item = _load_open_queue_item(db, user_id, item_id)
    item.status = models.SyncStatus.conflict
    item.conflict_data = conflict_data
    item.processed_at = utc_now()
    db.commit()
    db.refresh(item)

    logger.info(f"Sync queue item {item_id} parked as conflict")
    return item
