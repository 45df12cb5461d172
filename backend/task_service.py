"""
Task operations on behalf of an owner.

Every operation names the acting user and the owning user; the permission gate
decides whether the acting user may touch the owner's data (an owner acting on
their own tasks always may). Mutations go through the versioned
compare-and-set write and leave one audit entry each.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

import models
import schemas
from audit import log_audit
from auth.permissions import authorize
from errors import NotFoundError, InvalidStateError, ConflictError
from time_utils import utc_now, ensure_utc
from versioning import find_owned, compare_and_set, soft_delete

logger = logging.getLogger(__name__)

# Columns that may be omitted on update but never set to NULL
NON_NULLABLE_FIELDS = ("title", "priority", "sort_order")


# ============== Helpers ==============

def snapshot_task(task: models.Task) -> Dict[str, Any]:
    """JSON-safe snapshot of a task for audit previous/new state."""
    return schemas.Task.model_validate(task).model_dump(mode="json")


def audit_target(acting_user_id: Optional[str], owner_id: str) -> Optional[str]:
    """Owner to record as audit target when acting on someone else's behalf."""
    if acting_user_id is not None and acting_user_id != owner_id:
        return owner_id
    return None


def has_circular_parent(db: Session, task_id: str, parent_id: str) -> bool:
    """
    Check if making `parent_id` the parent of `task_id` would create a cycle.

    Walks up the ancestor chain of the proposed parent; a cycle exists if the
    walk reaches `task_id`.
    """
    visited = set()
    current_id = parent_id
    while current_id is not None and current_id not in visited:
        if current_id == task_id:
            return True
        visited.add(current_id)
        current_id = db.query(models.Task.parent_id).filter(models.Task.id == current_id).scalar()
    return False


def check_task_references(
    db: Session,
    user_id: str,
    project_id: Optional[str] = None,
    parent_id: Optional[str] = None,
    task_id: Optional[str] = None,
) -> None:
    """
    Validate that a task's project and parent exist and belong to `user_id`.

    Raises:
        NotFoundError: Project or parent task missing, deleted or not owned
        InvalidStateError: Parent would create a circular subtask relationship
    """
    if project_id is not None:
        if find_owned(db, models.Project, project_id, user_id) is None:
            logger.info(f"Project {project_id} not found for user {user_id}")
            raise NotFoundError("Project not found")

    if parent_id is not None:
        if find_owned(db, models.Task, parent_id, user_id) is None:
            logger.info(f"Parent task {parent_id} not found for user {user_id}")
            raise NotFoundError("Parent task not found")

        if task_id is not None and has_circular_parent(db, task_id, parent_id):
            logger.info(f"Circular subtask relationship detected for task {task_id} with parent {parent_id}")
            raise InvalidStateError("Cannot create circular subtask relationship")


def load_tags(db: Session, user_id: str, tag_ids: List[str]) -> List[models.Tag]:
    """Fetch the owner's tags by id; every id must resolve."""
    unique_ids = list(dict.fromkeys(tag_ids))
    if not unique_ids:
        return []

    tags = (
        db.query(models.Tag)
        .filter(models.Tag.id.in_(unique_ids), models.Tag.user_id == user_id)
        .all()
    )
    if len(tags) != len(unique_ids):
        missing = set(unique_ids) - {tag.id for tag in tags}
        logger.info(f"Tags {sorted(missing)} not found for user {user_id}")
        raise NotFoundError("Tag not found")
    return tags


def _column_values(data: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(data)
    if "metadata" in values:
        values["task_metadata"] = values.pop("metadata")
    if values.get("priority") is not None:
        values["priority"] = int(values["priority"])
    if values.get("due_date") is not None:
        values["due_date"] = ensure_utc(values["due_date"])
    return values


def _get_owned_task(db: Session, owner_id: str, task_id: str) -> models.Task:
    task = find_owned(db, models.Task, task_id, owner_id)
    if task is None:
        logger.info(f"Task {task_id} not found for owner {owner_id}")
        raise NotFoundError("Task not found")
    return task


def _write_task(
    db: Session,
    task: models.Task,
    expected_version: int,
    values: Dict[str, Any],
    tags: Optional[List[models.Tag]] = None,
) -> models.Task:
    """Apply a versioned write to a loaded task and reload it within the transaction."""
    if not compare_and_set(db, models.Task, task.id, task.user_id, expected_version, values):
        db.rollback()
        raise ConflictError("Task was modified by another client. Reload and retry.")

    if tags is not None:
        task.tags = tags
        db.flush()

    db.refresh(task)
    return task


# ============== Operations ==============

def create_task(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    data: schemas.TaskCreate,
) -> models.Task:
    """Create a task in the owner's list (requires edit access)."""
    logger.info(f"User {acting_user_id} creating task for owner {owner_id}: {data.title}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.edit, db)

    check_task_references(db, owner_id, project_id=data.project_id, parent_id=data.parent_id)

    if data.id is not None and db.query(models.Task.id).filter(models.Task.id == data.id).first():
        logger.info(f"Task id {data.id} already exists")
        raise ConflictError("Task already exists")

    values = _column_values(data.model_dump(exclude={"id", "tag_ids"}))
    task = models.Task(user_id=owner_id, sync_version=1, **values)
    if data.id is not None:
        task.id = data.id
    if data.tag_ids:
        task.tags = load_tags(db, owner_id, data.tag_ids)

    db.add(task)
    db.flush()

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=models.AuditAction.task_create,
        entity_type="task",
        entity_id=task.id,
        target_user_id=audit_target(acting_user_id, owner_id),
        new_state=snapshot_task(task),
    )
    db.commit()
    db.refresh(task)

    logger.info(f"Task created successfully: id={task.id}")
    return task


def list_tasks(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    project_id: Optional[str] = None,
    completed: Optional[bool] = None,
    priority: Optional[models.TaskPriority] = None,
    due_from: Optional[datetime] = None,
    due_to: Optional[datetime] = None,
    parent_id: Optional[str] = None,
    root_only: bool = False,
) -> List[models.Task]:
    """
    List the owner's live tasks (requires view access).

    Args:
        db: Database session
        acting_user_id: User performing the request
        owner_id: User whose tasks are listed
        project_id: Only tasks in this project
        completed: True for completed tasks only, False for open tasks only
        priority: Only tasks with this priority
        due_from: Only tasks due at or after this time
        due_to: Only tasks due at or before this time
        parent_id: Only subtasks of this task
        root_only: Only top-level tasks (ignored when parent_id is given)

    Returns:
        Tasks ordered by sort_order, newest first within the same sort_order
    """
    authorize(acting_user_id, owner_id, models.PermissionLevel.view, db)

    query = db.query(models.Task).filter(
        models.Task.user_id == owner_id,
        models.Task.deleted_at.is_(None),
    )

    if project_id is not None:
        query = query.filter(models.Task.project_id == project_id)
    if completed is True:
        query = query.filter(models.Task.completed_at.isnot(None))
    elif completed is False:
        query = query.filter(models.Task.completed_at.is_(None))
    if priority is not None:
        query = query.filter(models.Task.priority == int(priority))
    if due_from is not None:
        query = query.filter(models.Task.due_date >= ensure_utc(due_from))
    if due_to is not None:
        query = query.filter(models.Task.due_date <= ensure_utc(due_to))
    if parent_id is not None:
        query = query.filter(models.Task.parent_id == parent_id)
    elif root_only:
        query = query.filter(models.Task.parent_id.is_(None))

    tasks = query.order_by(models.Task.sort_order.asc(), models.Task.created_at.desc()).all()
    logger.debug(f"Listed {len(tasks)} task(s) for owner {owner_id}")
    return tasks


def get_task(db: Session, acting_user_id: Optional[str], owner_id: str, task_id: str) -> models.Task:
    authorize(acting_user_id, owner_id, models.PermissionLevel.view, db)
    return _get_owned_task(db, owner_id, task_id)


def update_task(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    task_id: str,
    data: schemas.TaskUpdate,
) -> models.Task:
    """
    Update a task (requires edit access).

    When `data.sync_version` is given it must match the stored version, so a
    client editing a stale copy gets a ConflictError instead of overwriting a
    newer change.
    """
    logger.info(f"User {acting_user_id} updating task {task_id} of owner {owner_id}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.edit, db)

    task = _get_owned_task(db, owner_id, task_id)
    if data.sync_version is not None and data.sync_version != task.sync_version:
        logger.info(
            f"Stale update for task {task_id}: client version {data.sync_version}, "
            f"server version {task.sync_version}"
        )
        raise ConflictError(f"Task has been modified. Current sync_version: {task.sync_version}")

    update_data = data.model_dump(exclude_unset=True, exclude={"sync_version", "tag_ids"})
    for field in NON_NULLABLE_FIELDS:
        if field in update_data and update_data[field] is None:
            update_data.pop(field)

    check_task_references(
        db,
        owner_id,
        project_id=update_data.get("project_id"),
        parent_id=update_data.get("parent_id"),
        task_id=task_id,
    )
    tags = load_tags(db, owner_id, data.tag_ids) if data.tag_ids is not None else None

    previous = snapshot_task(task)
    task = _write_task(db, task, task.sync_version, _column_values(update_data), tags=tags)

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=models.AuditAction.task_update,
        entity_type="task",
        entity_id=task.id,
        target_user_id=audit_target(acting_user_id, owner_id),
        previous_state=previous,
        new_state=snapshot_task(task),
        metadata={"fields": sorted(update_data.keys()) + (["tag_ids"] if tags is not None else [])},
    )
    db.commit()
    db.refresh(task)

    logger.info(f"Task {task_id} updated, sync_version={task.sync_version}")
    return task


def _set_completion(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    task_id: str,
    completed_at: Optional[datetime],
    action: models.AuditAction,
) -> models.Task:
    authorize(acting_user_id, owner_id, models.PermissionLevel.edit, db)

    task = _get_owned_task(db, owner_id, task_id)
    previous_completed_at = task.completed_at
    task = _write_task(db, task, task.sync_version, {"completed_at": completed_at})

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=action,
        entity_type="task",
        entity_id=task.id,
        target_user_id=audit_target(acting_user_id, owner_id),
        previous_state={"completed_at": ensure_utc(previous_completed_at).isoformat() if previous_completed_at else None},
        new_state={"completed_at": completed_at.isoformat() if completed_at else None},
    )
    db.commit()
    db.refresh(task)
    return task


def complete_task(db: Session, acting_user_id: Optional[str], owner_id: str, task_id: str) -> models.Task:
    """Mark a task completed now (requires edit access)."""
    logger.info(f"User {acting_user_id} completing task {task_id} of owner {owner_id}")
    return _set_completion(db, acting_user_id, owner_id, task_id, utc_now(), models.AuditAction.task_complete)


def uncomplete_task(db: Session, acting_user_id: Optional[str], owner_id: str, task_id: str) -> models.Task:
    """Reopen a task (requires edit access)."""
    logger.info(f"User {acting_user_id} reopening task {task_id} of owner {owner_id}")
    return _set_completion(db, acting_user_id, owner_id, task_id, None, models.AuditAction.task_uncomplete)


def delete_task(db: Session, acting_user_id: Optional[str], owner_id: str, task_id: str) -> None:
    """Soft-delete a task (requires full access). The tombstone stays visible to sync."""
    logger.info(f"User {acting_user_id} deleting task {task_id} of owner {owner_id}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.full, db)

    task = _get_owned_task(db, owner_id, task_id)
    previous = snapshot_task(task)

    if not soft_delete(db, models.Task, task_id, owner_id, task.sync_version):
        db.rollback()
        raise ConflictError("Task was modified by another client. Reload and retry.")

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=models.AuditAction.task_delete,
        entity_type="task",
        entity_id=task_id,
        target_user_id=audit_target(acting_user_id, owner_id),
        previous_state=previous,
    )
    db.commit()

    logger.info(f"Task {task_id} deleted by user {acting_user_id or owner_id}")
