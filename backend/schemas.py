from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal

from models import TaskPriority, PermissionLevel, InvitationStatus, SyncOperation, SyncStatus

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

# Maximum items of one entity type accepted in a single sync request
MAX_SYNC_BATCH = 500


# User schemas
class UserSummary(BaseModel):
    id: str
    email: str
    name: Optional[str] = None

    class Config:
        from_attributes = True


class User(UserSummary):
    avatar_url: Optional[str] = None
    timezone: str = "UTC"
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Tag schemas
class TagBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field("#6B7280", pattern=HEX_COLOR_PATTERN)


class TagCreate(TagBase):
    pass


class TagUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)


class Tag(TagBase):
    id: str
    user_id: str
    created_at: datetime

    class Config:
        from_attributes = True


# Project schemas
class ProjectBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    color: str = Field("#6B7280", pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, max_length=50)
    sort_order: int = 0


class ProjectCreate(ProjectBase):
    # Offline clients may supply their own id
    id: Optional[str] = Field(None, min_length=1, max_length=36)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, max_length=50)
    sort_order: Optional[int] = None
    is_archived: Optional[bool] = None
    sync_version: Optional[int] = Field(None, ge=0, description="Expected current version; mismatch returns 409")


class Project(ProjectBase):
    id: str
    user_id: str
    is_archived: bool = False
    sync_version: int
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.none
    due_date: Optional[datetime] = None
    recurrence: Optional[str] = Field(None, max_length=255)
    parent_id: Optional[str] = None
    project_id: Optional[str] = None
    sort_order: int = 0
    metadata: Optional[Dict[str, Any]] = None


class TaskCreate(TaskBase):
    # Offline clients may supply their own id
    id: Optional[str] = Field(None, min_length=1, max_length=36)
    tag_ids: Optional[List[str]] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    recurrence: Optional[str] = Field(None, max_length=255)
    parent_id: Optional[str] = None
    project_id: Optional[str] = None
    sort_order: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    tag_ids: Optional[List[str]] = None
    sync_version: Optional[int] = Field(None, ge=0, description="Expected current version; mismatch returns 409")


class Task(TaskBase):
    id: str
    user_id: str
    completed_at: Optional[datetime] = None
    google_event_id: Optional[str] = None
    sync_version: int
    last_synced_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="task_metadata")
    tags: List[Tag] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        populate_by_name = True


# Sync payload data schemas.
# Fields typed without Optional reject an explicit null while still being
# omittable, so a client cannot null out a NOT NULL column.
class TaskSyncData(BaseModel):
    title: str = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    priority: TaskPriority = None
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    recurrence: Optional[str] = Field(None, max_length=255)
    parent_id: Optional[str] = None
    project_id: Optional[str] = None
    sort_order: int = None
    metadata: Optional[Dict[str, Any]] = None


class TaskSyncCreateData(TaskSyncData):
    title: str = Field(..., min_length=1, max_length=500)


class ProjectSyncData(BaseModel):
    name: str = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    color: str = Field(None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, max_length=50)
    is_archived: bool = None
    sort_order: int = None


class ProjectSyncCreateData(ProjectSyncData):
    name: str = Field(..., min_length=1, max_length=255)


# Sync wire schemas
class SyncItem(BaseModel):
    id: str = Field(..., min_length=1, max_length=36)
    sync_version: int = Field(..., ge=0, description="Version the client last observed")
    data: Dict[str, Any] = Field(default_factory=dict)
    operation: SyncOperation
    client_updated_at: Optional[datetime] = None


class SyncRequest(BaseModel):
    tasks: List[SyncItem] = Field(default_factory=list, max_length=MAX_SYNC_BATCH)
    projects: List[SyncItem] = Field(default_factory=list, max_length=MAX_SYNC_BATCH)
    last_sync_at: Optional[datetime] = None


class SyncItemError(BaseModel):
    id: str
    operation: SyncOperation
    error: str
    error_code: str


class TaskConflict(BaseModel):
    client_version: SyncItem
    server_version: Task


class ProjectConflict(BaseModel):
    client_version: SyncItem
    server_version: Project


class TaskSyncResult(BaseModel):
    synced: List[Task] = Field(default_factory=list)
    conflicts: List[TaskConflict] = Field(default_factory=list)
    errors: List[SyncItemError] = Field(default_factory=list)


class ProjectSyncResult(BaseModel):
    synced: List[Project] = Field(default_factory=list)
    conflicts: List[ProjectConflict] = Field(default_factory=list)
    errors: List[SyncItemError] = Field(default_factory=list)


class SyncResult(BaseModel):
    tasks: TaskSyncResult = Field(default_factory=TaskSyncResult)
    projects: ProjectSyncResult = Field(default_factory=ProjectSyncResult)
    server_timestamp: datetime


class ChangesResponse(BaseModel):
    tasks: List[Task] = Field(default_factory=list)
    projects: List[Project] = Field(default_factory=list)
    server_timestamp: datetime


# Sync queue schemas
class SyncQueueCreate(BaseModel):
    entity_type: Literal["task", "project", "tag"]
    entity_id: str = Field(..., min_length=1, max_length=36)
    operation: SyncOperation
    payload: Dict[str, Any] = Field(default_factory=dict)
    client_timestamp: Optional[datetime] = None


class SyncQueueFailure(BaseModel):
    error: str = Field(..., min_length=1)


class SyncQueueConflict(BaseModel):
    conflict_data: Dict[str, Any]


class SyncQueueItem(BaseModel):
    id: str
    user_id: str
    entity_type: str
    entity_id: str
    operation: SyncOperation
    payload: Dict[str, Any] = Field(default_factory=dict)
    client_timestamp: datetime
    status: SyncStatus
    retry_count: int = 0
    error_message: Optional[str] = None
    conflict_data: Optional[Dict[str, Any]] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Permission schemas
class InvitationCreate(BaseModel):
    assistant_email: EmailStr
    level: PermissionLevel = PermissionLevel.view
    expires_at: Optional[datetime] = None


class Invitation(BaseModel):
    id: str
    owner_id: str
    owner: Optional[UserSummary] = None
    email: str
    level: PermissionLevel
    status: InvitationStatus
    token: str
    expires_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True


class PermissionUpdate(BaseModel):
    level: PermissionLevel


class Permission(BaseModel):
    id: str
    owner_id: str
    owner: Optional[UserSummary] = None
    assistant_id: str
    assistant: Optional[UserSummary] = None
    level: PermissionLevel
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Audit schemas
class AuditLog(BaseModel):
    id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    user_id: str
    target_user_id: Optional[str] = None
    previous_state: Optional[Dict[str, Any]] = None
    new_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="audit_metadata")
    created_at: datetime

    class Config:
        from_attributes = True
        populate_by_name = True


class AuditStat(BaseModel):
    action: str
    count: int
