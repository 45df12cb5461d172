"""
Project and tag operations.

Projects are versioned and soft-deleted like tasks and go through the same
permission gate and audit trail. Tags are plain per-user labels: unversioned,
owner-only, physically deleted.
"""

import logging
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

import models
import schemas
from audit import log_audit
from auth.permissions import authorize
from errors import NotFoundError, ConflictError
from task_service import audit_target
from versioning import find_owned, compare_and_set, soft_delete

logger = logging.getLogger(__name__)

NON_NULLABLE_FIELDS = ("name", "color", "sort_order", "is_archived")


def snapshot_project(project: models.Project) -> Dict[str, Any]:
    return schemas.Project.model_validate(project).model_dump(mode="json")


def _get_owned_project(db: Session, owner_id: str, project_id: str) -> models.Project:
    project = find_owned(db, models.Project, project_id, owner_id)
    if project is None:
        logger.info(f"Project {project_id} not found for owner {owner_id}")
        raise NotFoundError("Project not found")
    return project


def _write_project(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    project: models.Project,
    values: Dict[str, Any],
    action: models.AuditAction,
) -> models.Project:
    previous = snapshot_project(project)

    if not compare_and_set(db, models.Project, project.id, owner_id, project.sync_version, values):
        db.rollback()
        raise ConflictError("Project was modified by another client. Reload and retry.")
    db.refresh(project)

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=action,
        entity_type="project",
        entity_id=project.id,
        target_user_id=audit_target(acting_user_id, owner_id),
        previous_state=previous,
        new_state=snapshot_project(project),
        metadata={"fields": sorted(values.keys())},
    )
    db.commit()
    db.refresh(project)
    return project


# ============== Projects ==============

def create_project(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    data: schemas.ProjectCreate,
) -> models.Project:
    """Create a project for the owner (requires edit access)."""
    logger.info(f"User {acting_user_id} creating project for owner {owner_id}: {data.name}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.edit, db)

    if data.id is not None and db.query(models.Project.id).filter(models.Project.id == data.id).first():
        logger.info(f"Project id {data.id} already exists")
        raise ConflictError("Project already exists")

    project = models.Project(user_id=owner_id, sync_version=1, **data.model_dump(exclude={"id"}))
    if data.id is not None:
        project.id = data.id

    db.add(project)
    db.flush()

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=models.AuditAction.project_create,
        entity_type="project",
        entity_id=project.id,
        target_user_id=audit_target(acting_user_id, owner_id),
        new_state=snapshot_project(project),
    )
    db.commit()
    db.refresh(project)

    logger.info(f"Project created successfully: id={project.id}")
    return project


def list_projects(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    include_archived: bool = True,
) -> List[models.Project]:
    """List the owner's live projects by sort order, newest first within the same order."""
    authorize(acting_user_id, owner_id, models.PermissionLevel.view, db)

    query = db.query(models.Project).filter(
        models.Project.user_id == owner_id,
        models.Project.deleted_at.is_(None),
    )
    if not include_archived:
        query = query.filter(models.Project.is_archived == False)  # noqa: E712

    return query.order_by(models.Project.sort_order.asc(), models.Project.created_at.desc()).all()


def get_project(db: Session, acting_user_id: Optional[str], owner_id: str, project_id: str) -> models.Project:
    authorize(acting_user_id, owner_id, models.PermissionLevel.view, db)
    return _get_owned_project(db, owner_id, project_id)


def update_project(
    db: Session,
    acting_user_id: Optional[str],
    owner_id: str,
    project_id: str,
    data: schemas.ProjectUpdate,
) -> models.Project:
    """Update a project (requires edit access). A stale `sync_version` raises ConflictError."""
    logger.info(f"User {acting_user_id} updating project {project_id} of owner {owner_id}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.edit, db)

    project = _get_owned_project(db, owner_id, project_id)
    if data.sync_version is not None and data.sync_version != project.sync_version:
        logger.info(
            f"Stale update for project {project_id}: client version {data.sync_version}, "
            f"server version {project.sync_version}"
        )
        raise ConflictError(f"Project has been modified. Current sync_version: {project.sync_version}")

    values = data.model_dump(exclude_unset=True, exclude={"sync_version"})
    for field in NON_NULLABLE_FIELDS:
        if field in values and values[field] is None:
            values.pop(field)

    project = _write_project(db, acting_user_id, owner_id, project, values, models.AuditAction.project_update)
    logger.info(f"Project {project_id} updated, sync_version={project.sync_version}")
    return project


def archive_project(db: Session, acting_user_id: Optional[str], owner_id: str, project_id: str) -> models.Project:
    """Archive a project (requires edit access)."""
    logger.info(f"User {acting_user_id} archiving project {project_id} of owner {owner_id}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.edit, db)

    project = _get_owned_project(db, owner_id, project_id)
    return _write_project(
        db, acting_user_id, owner_id, project, {"is_archived": True}, models.AuditAction.project_archive
    )


def delete_project(db: Session, acting_user_id: Optional[str], owner_id: str, project_id: str) -> None:
    """Soft-delete a project (requires full access). Its tasks are left in place."""
    logger.info(f"User {acting_user_id} deleting project {project_id} of owner {owner_id}")
    authorize(acting_user_id, owner_id, models.PermissionLevel.full, db)

    project = _get_owned_project(db, owner_id, project_id)
    previous = snapshot_project(project)

    if not soft_delete(db, models.Project, project_id, owner_id, project.sync_version):
        db.rollback()
        raise ConflictError("Project was modified by another client. Reload and retry.")

    log_audit(
        db,
        user_id=acting_user_id or owner_id,
        action=models.AuditAction.project_delete,
        entity_type="project",
        entity_id=project_id,
        target_user_id=audit_target(acting_user_id, owner_id),
        previous_state=previous,
    )
    db.commit()

    logger.info(f"Project {project_id} deleted by user {acting_user_id or owner_id}")


# ============== Tags ==============

def _get_owned_tag(db: Session, user_id: str, tag_id: str) -> models.Tag:
    tag = db.query(models.Tag).filter(models.Tag.id == tag_id, models.Tag.user_id == user_id).first()
    if tag is None:
        raise NotFoundError("Tag not found")
    return tag


def create_tag(db: Session, user_id: str, data: schemas.TagCreate) -> models.Tag:
    tag = models.Tag(user_id=user_id, **data.model_dump())
    db.add(tag)
    db.commit()
    db.refresh(tag)

    logger.info(f"Tag created: id={tag.id}, name={tag.name}, user={user_id}")
    return tag


def list_tags(db: Session, user_id: str) -> List[models.Tag]:
    return db.query(models.Tag).filter(models.Tag.user_id == user_id).order_by(models.Tag.name.asc()).all()


def update_tag(db: Session, user_id: str, tag_id: str, data: schemas.TagUpdate) -> models.Tag:
    tag = _get_owned_tag(db, user_id, tag_id)

    for field, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(tag, field, value)

    db.commit()
    db.refresh(tag)

    logger.info(f"Tag {tag_id} updated by user {user_id}")
    return tag


def delete_tag(db: Session, user_id: str, tag_id: str) -> None:
    """Delete a tag; it is removed from every task carrying it."""
    tag = _get_owned_tag(db, user_id, tag_id)
    db.delete(tag)
    db.commit()

    logger.info(f"Tag {tag_id} deleted by user {user_id}")
