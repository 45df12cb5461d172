from fastapi import FastAPI, Depends, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from typing import List, Optional, Tuple
from datetime import datetime, timedelta
import logging
import os

from database import get_db, engine, init_db, SessionLocal
import models
import schemas
import audit
import sync
import task_service
import project_service
from time_utils import utc_now
from auth.routes import router as auth_router
from auth.dependencies import get_current_user, get_acting_context
from auth import permissions

# Configure logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
    LOG_LEVEL = "INFO"

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
    if origin.strip()
]

try:
    AUDIT_RETENTION_DAYS = int(os.environ.get("AUDIT_RETENTION_DAYS", "0"))
    if AUDIT_RETENTION_DAYS < 0:
        logger.warning(f"⚠️  AUDIT_RETENTION_DAYS={AUDIT_RETENTION_DAYS} is negative. Retention cleanup disabled.")
        AUDIT_RETENTION_DAYS = 0
except ValueError:
    logger.warning("⚠️  Invalid AUDIT_RETENTION_DAYS value in environment. Retention cleanup disabled.")
    AUDIT_RETENTION_DAYS = 0

app = FastAPI(
    title="Todolisti API",
    description="Offline-first task management with delegated assistant access",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register authentication router
app.include_router(auth_router)


# ============== Startup ==============

@app.on_event("startup")
async def prepare_database():
    """
    Create tables on SQLite development databases and apply audit retention.

    Audit entries older than AUDIT_RETENTION_DAYS are purged when the variable
    is set to a positive number of days.
    """
    if engine.dialect.name == "sqlite":
        init_db()

    if AUDIT_RETENTION_DAYS <= 0:
        logger.debug("Audit retention cleanup disabled")
        return

    db = SessionLocal()
    try:
        cutoff = utc_now() - timedelta(days=AUDIT_RETENTION_DAYS)
        removed = audit.cleanup(db, cutoff)
        logger.info(f"✅ Audit retention: removed {removed} entries older than {AUDIT_RETENTION_DAYS} days")
    except Exception as e:
        logger.error(f"Audit retention cleanup failed: {e}")
        db.rollback()
    finally:
        db.close()


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Sync ==============

@app.post("/api/sync", response_model=schemas.SyncResult)
def sync_changes(
    payload: schemas.SyncRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Apply a batch of offline changes; returns synced items, conflicts and per-item errors."""
    return sync.sync(db, current_user.id, payload)


@app.get("/api/sync/changes", response_model=schemas.ChangesResponse)
def get_changes(
    since: Optional[datetime] = Query(None, description="Return entities changed after this time (omit for all)"),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Catch-up read: tasks and projects changed since a timestamp, tombstones included."""
    return sync.get_changes_since(db, current_user.id, since)


@app.get("/api/sync/pending", response_model=List[schemas.SyncQueueItem])
def get_pending_operations(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return sync.get_pending_operations(db, current_user.id)


@app.post("/api/sync/queue", response_model=schemas.SyncQueueItem, status_code=status.HTTP_201_CREATED)
def queue_operation(
    item: schemas.SyncQueueCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return sync.queue_operation(
        db,
        current_user.id,
        entity_type=item.entity_type,
        entity_id=item.entity_id,
        operation=item.operation,
        payload=item.payload,
        client_timestamp=item.client_timestamp,
    )


@app.post("/api/sync/queue/{item_id}/complete", response_model=schemas.SyncQueueItem)
def complete_queue_item(
    item_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return sync.mark_completed(db, current_user.id, item_id)


@app.post("/api/sync/queue/{item_id}/fail", response_model=schemas.SyncQueueItem)
def fail_queue_item(
    item_id: str,
    failure: schemas.SyncQueueFailure,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return sync.mark_failed(db, current_user.id, item_id, failure.error)


@app.post("/api/sync/queue/{item_id}/conflict", response_model=schemas.SyncQueueItem)
def conflict_queue_item(
    item_id: str,
    conflict: schemas.SyncQueueConflict,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Park a queued operation that hit a version conflict, with both sides for later resolution."""
    return sync.mark_conflict(db, current_user.id, item_id, conflict.conflict_data)


# ============== Permissions ==============

@app.post("/api/permissions/invite", response_model=schemas.Invitation, status_code=status.HTTP_201_CREATED)
def invite_assistant(
    invitation: schemas.InvitationCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Invite an assistant by email. The returned token is what the assistant accepts."""
    logger.info(f"User {current_user.id} inviting {invitation.assistant_email} at level {invitation.level.value}")
    return permissions.create_invitation(
        current_user.id,
        invitation.assistant_email,
        invitation.level,
        db,
        expires_at=invitation.expires_at,
    )


@app.post("/api/permissions/accept/{token}", response_model=schemas.Permission)
def accept_invitation(
    token: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return permissions.accept_invitation(current_user.id, token, db)


@app.post("/api/permissions/decline/{token}", response_model=schemas.Invitation)
def decline_invitation(
    token: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return permissions.decline_invitation(current_user.id, token, db)


@app.get("/api/permissions/pending", response_model=List[schemas.Invitation])
def list_pending_invitations(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Pending invitations addressed to the current user's email."""
    return permissions.find_pending_invitations(current_user.email, db)


@app.get("/api/permissions/assistants", response_model=List[schemas.Permission])
def list_assistants(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Users the current user has delegated access to."""
    return permissions.find_assistants(current_user.id, db)


@app.get("/api/permissions/delegators", response_model=List[schemas.Permission])
def list_delegators(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Owners who have delegated access to the current user."""
    return permissions.find_delegators(current_user.id, db)


@app.patch("/api/permissions/{permission_id}", response_model=schemas.Permission)
def update_permission(
    permission_id: str,
    update: schemas.PermissionUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Change an assistant's level (owner only)."""
    return permissions.update_permission(current_user.id, permission_id, update.level, db)


@app.delete("/api/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_permission(
    permission_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Revoke a grant (owner or assistant)."""
    permissions.revoke_permission(current_user.id, permission_id, db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Tasks ==============

@app.get("/api/tasks", response_model=List[schemas.Task])
def list_tasks(
    project_id: Optional[str] = Query(None),
    completed: Optional[bool] = Query(None),
    priority: Optional[int] = Query(None, ge=0, le=4, description="0 none .. 4 urgent"),
    due_from: Optional[datetime] = Query(None, description="Tasks due at or after this time"),
    due_to: Optional[datetime] = Query(None, description="Tasks due at or before this time"),
    parent_id: Optional[str] = Query(None, description="Only subtasks of this task"),
    root_only: bool = Query(False, description="Only top-level tasks"),
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    """List tasks (own, or the owner's with ?for_user_id= and view access)."""
    acting_user_id, owner_id = context
    logger.debug(
        f"User {acting_user_id} listing tasks of {owner_id}: project={project_id}, completed={completed}, "
        f"priority={priority}, due_from={due_from}, due_to={due_to}, parent={parent_id}, root_only={root_only}"
    )
    return task_service.list_tasks(
        db,
        acting_user_id,
        owner_id,
        project_id=project_id,
        completed=completed,
        priority=priority,
        due_from=due_from,
        due_to=due_to,
        parent_id=parent_id,
        root_only=root_only,
    )


@app.post("/api/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    """Create a task (requires edit access when acting for another user)."""
    acting_user_id, owner_id = context
    return task_service.create_task(db, acting_user_id, owner_id, task)


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return task_service.get_task(db, acting_user_id, owner_id, task_id)


@app.patch("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: str,
    task_update: schemas.TaskUpdate,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    """Update a task (requires edit access). Send sync_version to guard against stale edits."""
    acting_user_id, owner_id = context
    return task_service.update_task(db, acting_user_id, owner_id, task_id, task_update)


@app.post("/api/tasks/{task_id}/complete", response_model=schemas.Task)
def complete_task(
    task_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return task_service.complete_task(db, acting_user_id, owner_id, task_id)


@app.post("/api/tasks/{task_id}/uncomplete", response_model=schemas.Task)
def uncomplete_task(
    task_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return task_service.uncomplete_task(db, acting_user_id, owner_id, task_id)


@app.delete("/api/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    """Delete a task (requires full access when acting for another user)."""
    acting_user_id, owner_id = context
    task_service.delete_task(db, acting_user_id, owner_id, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Projects ==============

@app.get("/api/projects", response_model=List[schemas.Project])
def list_projects(
    include_archived: bool = Query(True),
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return project_service.list_projects(db, acting_user_id, owner_id, include_archived=include_archived)


@app.post("/api/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return project_service.create_project(db, acting_user_id, owner_id, project)


@app.get("/api/projects/{project_id}", response_model=schemas.Project)
def get_project(
    project_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return project_service.get_project(db, acting_user_id, owner_id, project_id)


@app.patch("/api/projects/{project_id}", response_model=schemas.Project)
def update_project(
    project_id: str,
    project_update: schemas.ProjectUpdate,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return project_service.update_project(db, acting_user_id, owner_id, project_id, project_update)


@app.post("/api/projects/{project_id}/archive", response_model=schemas.Project)
def archive_project(
    project_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    return project_service.archive_project(db, acting_user_id, owner_id, project_id)


@app.delete("/api/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(
    project_id: str,
    context: Tuple[str, str] = Depends(get_acting_context),
    db: Session = Depends(get_db)
):
    acting_user_id, owner_id = context
    project_service.delete_project(db, acting_user_id, owner_id, project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Tags ==============

@app.get("/api/tags", response_model=List[schemas.Tag])
def list_tags(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return project_service.list_tags(db, current_user.id)


@app.post("/api/tags", response_model=schemas.Tag, status_code=status.HTTP_201_CREATED)
def create_tag(
    tag: schemas.TagCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return project_service.create_tag(db, current_user.id, tag)


@app.patch("/api/tags/{tag_id}", response_model=schemas.Tag)
def update_tag(
    tag_id: str,
    tag_update: schemas.TagUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return project_service.update_tag(db, current_user.id, tag_id, tag_update)


@app.delete("/api/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tag(
    tag_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    project_service.delete_tag(db, current_user.id, tag_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Audit ==============

@app.get("/api/audit", response_model=List[schemas.AuditLog])
def list_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action, e.g. task.update"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(audit.DEFAULT_PAGE_SIZE, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Audit entries for actions the current user performed, newest first."""
    return audit.find_by_user(
        db,
        current_user.id,
        action=action,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@app.get("/api/audit/stats", response_model=List[schemas.AuditStat])
def get_audit_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return audit.get_stats(db, current_user.id, start_date=start_date, end_date=end_date)


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    logger.info(f"🚀 Todolisti API starting on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
