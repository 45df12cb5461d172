from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, DateTime, Enum, Table, Index, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid
from database import Base
from time_utils import utc_now


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_uuid() -> str:
    return str(uuid.uuid4())


class TaskPriority(int, enum.Enum):
    none = 0
    low = 1
    medium = 2
    high = 3
    urgent = 4


class PermissionLevel(str, enum.Enum):
    view = "view"    # Can view tasks
    edit = "edit"    # Can view and edit tasks
    full = "full"    # Full control including delete


class InvitationStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class SyncOperation(str, enum.Enum):
    create = "create"
    update = "update"
    delete = "delete"


class SyncStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    conflict = "conflict"


class AuditAction(str, enum.Enum):
    task_create = "task.create"
    task_update = "task.update"
    task_delete = "task.delete"
    task_complete = "task.complete"
    task_uncomplete = "task.uncomplete"

    project_create = "project.create"
    project_update = "project.update"
    project_delete = "project.delete"
    project_archive = "project.archive"

    permission_revoke = "permission.revoke"
    permission_update = "permission.update"
    invitation_send = "invitation.send"
    invitation_accept = "invitation.accept"
    invitation_decline = "invitation.decline"


task_tags = Table(
    "task_tags",
    Base.metadata,
    Column("task_id", String(36), ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    avatar_url = Column(String(500))
    google_id = Column(String(255), index=True)
    timezone = Column(String(50), nullable=False, default="UTC")
    is_active = Column(Boolean, nullable=False, default=True)
    last_login_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    tasks = relationship("Task", back_populates="user")
    projects = relationship("Project", back_populates="user")


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (Index("ix_projects_user_deleted", "user_id", "deleted_at"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    color = Column(String(7), nullable=False, default="#6B7280")
    icon = Column(String(50))
    is_archived = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    # Incremented on every accepted mutation; basis for optimistic concurrency
    sync_version = Column(Integer, nullable=False, default=0)

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="projects")
    tasks = relationship("Task", back_populates="project")


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (Index("ix_tags_user_name", "user_id", "name"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False)
    color = Column(String(7), nullable=False, default="#6B7280")
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    tasks = relationship("Task", secondary=task_tags, back_populates="tags")


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_user_deleted", "user_id", "deleted_at"),
        Index("ix_tasks_user_completed", "user_id", "completed_at"),
        Index("ix_tasks_user_due", "user_id", "due_date"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    priority = Column(Integer, nullable=False, default=TaskPriority.none.value)
    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    recurrence = Column(String(255))
    parent_id = Column(String(36), ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    google_event_id = Column(String(255))

    # Incremented on every accepted mutation; basis for optimistic concurrency
    sync_version = Column(Integer, nullable=False, default=0)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    task_metadata = Column("metadata", JSONType)

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Tombstone: soft-deleted rows stay visible to sync catch-up reads
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="tasks")
    project = relationship("Project", back_populates="tasks")
    parent = relationship("Task", remote_side=[id], back_populates="subtasks")
    subtasks = relationship("Task", back_populates="parent")
    tags = relationship("Tag", secondary=task_tags, back_populates="tasks")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (Index("ix_permissions_owner_assistant", "owner_id", "assistant_id"),)

    id = Column(String(36), primary_key=True, default=generate_uuid)
    level = Column(Enum(PermissionLevel, name="permission_level"), nullable=False, default=PermissionLevel.view)

    # Revocation flips this flag; rows are kept for the audit history
    is_active = Column(Boolean, nullable=False, default=True)

    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assistant_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Relationships
    owner = relationship("User", foreign_keys=[owner_id])
    assistant = relationship("User", foreign_keys=[assistant_id])


class PermissionInvitation(Base):
    __tablename__ = "permission_invitations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False)
    level = Column(Enum(PermissionLevel, name="permission_level"), nullable=False, default=PermissionLevel.view)
    status = Column(Enum(InvitationStatus, name="invitation_status"), nullable=False, default=InvitationStatus.pending)
    token = Column(String(255), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    owner = relationship("User")


class SyncQueueItem(Base):
    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_user_status", "user_id", "status"),
        Index("ix_sync_queue_created_at", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    operation = Column(Enum(SyncOperation, name="sync_operation"), nullable=False)

    # entity_type stored as VARCHAR(50): task, project, tag
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    client_timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(SyncStatus, name="sync_status"), nullable=False, default=SyncStatus.pending)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    conflict_data = Column(JSONType, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    user = relationship("User")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
        Index("ix_audit_logs_target_created", "target_user_id", "created_at"),
        Index("ix_audit_logs_action_created", "action", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)

    # action stored as VARCHAR(50) so new audit actions need no migration.
    # AuditAction provides the validation layer for known actions.
    action = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=True)
    previous_state = Column(JSONType, nullable=True)
    new_state = Column(JSONType, nullable=True)
    audit_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    # Acting user, and the owner when acting on someone else's behalf
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    target_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    user = relationship("User", foreign_keys=[user_id])
    target_user = relationship("User", foreign_keys=[target_user_id])
