"""
Delegated-access permission engine.

An owner grants an assistant rights over the owner's tasks and projects at one
of three levels (view < edit < full). This module evaluates those grants,
provides the single authorization gate every task/project operation goes
through, and manages the invitation lifecycle that creates grants.
"""

import logging
import os
import secrets
from datetime import datetime
from typing import Optional, List

from sqlalchemy.orm import Session

import models
from audit import log_audit
from errors import NotFoundError, ForbiddenError, InvalidStateError, ExpiredError, ConflictError
from time_utils import is_expired, days_from_now, ensure_utc

logger = logging.getLogger(__name__)

# Level hierarchy: full > edit > view
PERMISSION_LEVEL_RANK = {
    models.PermissionLevel.view: 1,
    models.PermissionLevel.edit: 2,
    models.PermissionLevel.full: 3,
}

try:
    INVITATION_EXPIRE_DAYS = int(os.environ.get("INVITATION_EXPIRE_DAYS", "7"))
    if INVITATION_EXPIRE_DAYS < 1 or INVITATION_EXPIRE_DAYS > 90:
        logger.warning(
            f"⚠️  INVITATION_EXPIRE_DAYS={INVITATION_EXPIRE_DAYS} is outside safe range (1-90). "
            "Using default of 7 days."
        )
        INVITATION_EXPIRE_DAYS = 7
except ValueError:
    logger.warning("⚠️  Invalid INVITATION_EXPIRE_DAYS value in environment. Using default of 7 days.")
    INVITATION_EXPIRE_DAYS = 7


def level_rank(level: models.PermissionLevel) -> int:
    """Ordinal rank of a permission level (view=1, edit=2, full=3)."""
    return PERMISSION_LEVEL_RANK[models.PermissionLevel(level)]


def _active_permission(assistant_id: str, owner_id: str, db: Session) -> Optional[models.Permission]:
    return (
        db.query(models.Permission)
        .filter(
            models.Permission.assistant_id == assistant_id,
            models.Permission.owner_id == owner_id,
            models.Permission.is_active == True,  # noqa: E712
        )
        .order_by(models.Permission.created_at.desc())
        .first()
    )


def check_permission(
    assistant_id: str,
    owner_id: str,
    required_level: models.PermissionLevel,
    db: Session,
) -> bool:
    """
    Check if an assistant holds at least `required_level` over an owner's data.

    Args:
        assistant_id: User acting on the owner's behalf
        owner_id: User who owns the data
        required_level: Minimum level required
        db: Database session

    Returns:
        True if an active grant with a sufficient level exists, False otherwise

    Example:
        >>> check_permission(assistant.id, owner.id, PermissionLevel.edit, db)
        True
    """
    logger.debug(
        f"Checking permission for assistant {assistant_id} on owner {owner_id}, "
        f"required_level: {required_level}"
    )

    permission = _active_permission(assistant_id, owner_id, db)
    if permission is None:
        logger.info(f"User {assistant_id} has no active permission from owner {owner_id}")
        return False

    has_permission = level_rank(permission.level) >= level_rank(required_level)
    if has_permission:
        logger.debug(
            f"User {assistant_id} has level '{permission.level.value}' from owner {owner_id}, "
            f"permission granted for required level '{models.PermissionLevel(required_level).value}'"
        )
    else:
        logger.info(
            f"User {assistant_id} has level '{permission.level.value}' from owner {owner_id}, "
            f"but '{models.PermissionLevel(required_level).value}' is required"
        )
    return has_permission


def get_permission_level(assistant_id: str, owner_id: str, db: Session) -> Optional[models.PermissionLevel]:
    """Return the assistant's active level over the owner's data, or None."""
    permission = _active_permission(assistant_id, owner_id, db)
    return permission.level if permission else None


def authorize(
    acting_user_id: Optional[str],
    owner_id: str,
    required_level: models.PermissionLevel,
    db: Session,
) -> None:
    """
    Authorization gate for every operation on an owner's data.

    Acting on your own data (or with no distinct acting user) is implicitly
    full access. Anyone else needs an active grant of at least
    `required_level`.

    Raises:
        ForbiddenError: If the acting user's grant is missing or insufficient
    """
    if acting_user_id is None or acting_user_id == owner_id:
        return

    if not check_permission(acting_user_id, owner_id, required_level, db):
        level = models.PermissionLevel(required_level).value
        raise ForbiddenError(f"Insufficient permissions. Required level: {level}")


# ============== Invitations ==============

def _mark_expired(invitation: models.PermissionInvitation, db: Session) -> None:
    logger.info(f"Invitation {invitation.id} expired at {invitation.expires_at}, marking as expired")
    invitation.status = models.InvitationStatus.expired
    db.commit()


def create_invitation(
    owner_id: str,
    assistant_email: str,
    level: models.PermissionLevel,
    db: Session,
    expires_at: Optional[datetime] = None,
) -> models.PermissionInvitation:
    """
    Invite an assistant by email.

    Raises:
        ConflictError: If a pending, unexpired invitation already exists for
            this owner and email
    """
    email = assistant_email.strip().lower()
    logger.debug(f"Owner {owner_id} inviting {email} at level {level}")

    existing = (
        db.query(models.PermissionInvitation)
        .filter(
            models.PermissionInvitation.owner_id == owner_id,
            models.PermissionInvitation.email == email,
            models.PermissionInvitation.status == models.InvitationStatus.pending,
        )
        .first()
    )
    if existing is not None:
        if is_expired(existing.expires_at):
            _mark_expired(existing, db)
        else:
            logger.info(f"Owner {owner_id} already has a pending invitation for {email}")
            raise ConflictError("An active invitation already exists for this email")

    invitation = models.PermissionInvitation(
        owner_id=owner_id,
        email=email,
        level=models.PermissionLevel(level),
        status=models.InvitationStatus.pending,
        token=secrets.token_urlsafe(32),
        expires_at=ensure_utc(expires_at) if expires_at else days_from_now(INVITATION_EXPIRE_DAYS),
    )
    db.add(invitation)
    db.flush()

    log_audit(
        db,
        user_id=owner_id,
        action=models.AuditAction.invitation_send,
        entity_type="PermissionInvitation",
        entity_id=invitation.id,
        new_state={"email": email, "level": invitation.level.value},
    )
    db.commit()
    db.refresh(invitation)

    logger.info(f"Invitation {invitation.id} created by owner {owner_id} for {email}")
    return invitation


def _load_pending_invitation(token: str, db: Session) -> models.PermissionInvitation:
    invitation = (
        db.query(models.PermissionInvitation)
        .filter(models.PermissionInvitation.token == token)
        .first()
    )
    if invitation is None:
        logger.info("Invitation token not found")
        raise NotFoundError("Invitation not found")

    if invitation.status != models.InvitationStatus.pending:
        logger.info(f"Invitation {invitation.id} is {invitation.status.value}, not pending")
        raise InvalidStateError("Invitation is no longer valid")

    # Expiry is applied lazily, when the invitation is read
    if is_expired(invitation.expires_at):
        _mark_expired(invitation, db)
        raise ExpiredError("Invitation has expired")

    return invitation


def accept_invitation(assistant_id: str, token: str, db: Session) -> models.Permission:
    """
    Accept an invitation and create the grant it describes.

    Any earlier active grant for the same owner/assistant pair is deactivated so
    that only one active grant per pair exists.

    Raises:
        NotFoundError: Unknown token
        InvalidStateError: Invitation not pending, or owner accepting their own invitation
        ExpiredError: Invitation past its expiry (status becomes expired)
    """
    logger.debug(f"User {assistant_id} accepting invitation")
    invitation = _load_pending_invitation(token, db)

    if invitation.owner_id == assistant_id:
        logger.info(f"User {assistant_id} attempted to accept their own invitation {invitation.id}")
        raise InvalidStateError("Cannot accept your own invitation")

    superseded = (
        db.query(models.Permission)
        .filter(
            models.Permission.owner_id == invitation.owner_id,
            models.Permission.assistant_id == assistant_id,
            models.Permission.is_active == True,  # noqa: E712
        )
        .all()
    )
    for old in superseded:
        old.is_active = False

    invitation.status = models.InvitationStatus.accepted

    permission = models.Permission(
        owner_id=invitation.owner_id,
        assistant_id=assistant_id,
        level=invitation.level,
        is_active=True,
    )
    db.add(permission)
    db.flush()

    log_audit(
        db,
        user_id=assistant_id,
        action=models.AuditAction.invitation_accept,
        entity_type="Permission",
        entity_id=permission.id,
        target_user_id=invitation.owner_id,
        new_state={"level": permission.level.value},
        metadata={
            "invitation_id": invitation.id,
            "superseded_permission_ids": [old.id for old in superseded],
        },
    )
    db.commit()
    db.refresh(permission)

    logger.info(
        f"User {assistant_id} accepted invitation {invitation.id}: "
        f"permission {permission.id} at level '{permission.level.value}'"
    )
    return permission


def decline_invitation(user_id: str, token: str, db: Session) -> models.PermissionInvitation:
    """Decline a pending invitation. Same not-found / state / expiry rules as accept."""
    logger.debug(f"User {user_id} declining invitation")
    invitation = _load_pending_invitation(token, db)

    invitation.status = models.InvitationStatus.declined
    log_audit(
        db,
        user_id=user_id,
        action=models.AuditAction.invitation_decline,
        entity_type="PermissionInvitation",
        entity_id=invitation.id,
        target_user_id=invitation.owner_id,
    )
    db.commit()
    db.refresh(invitation)

    logger.info(f"User {user_id} declined invitation {invitation.id}")
    return invitation


# ============== Grants ==============

def revoke_permission(acting_user_id: str, permission_id: str, db: Session) -> models.Permission:
    """
    Revoke a grant. Either party (owner or assistant) may revoke.

    The row is deactivated, never deleted.

    Raises:
        NotFoundError: Unknown permission
        ForbiddenError: Caller is neither owner nor assistant
        InvalidStateError: Permission already revoked
    """
    permission = db.query(models.Permission).filter(models.Permission.id == permission_id).first()
    if permission is None:
        logger.info(f"Permission {permission_id} not found")
        raise NotFoundError("Permission not found")

    if acting_user_id not in (permission.owner_id, permission.assistant_id):
        logger.info(f"User {acting_user_id} is not a party to permission {permission_id}")
        raise ForbiddenError("Cannot revoke this permission")

    if not permission.is_active:
        raise InvalidStateError("Permission already revoked")

    permission.is_active = False
    other_party = permission.assistant_id if acting_user_id == permission.owner_id else permission.owner_id

    log_audit(
        db,
        user_id=acting_user_id,
        action=models.AuditAction.permission_revoke,
        entity_type="Permission",
        entity_id=permission.id,
        target_user_id=other_party,
        previous_state={"level": permission.level.value, "is_active": True},
        new_state={"level": permission.level.value, "is_active": False},
    )
    db.commit()
    db.refresh(permission)

    logger.info(f"Permission {permission_id} revoked by user {acting_user_id}")
    return permission


def update_permission(
    owner_id: str,
    permission_id: str,
    new_level: models.PermissionLevel,
    db: Session,
) -> models.Permission:
    """
    Change the level of an active grant (owner only).

    Raises:
        NotFoundError: Permission missing, inactive, or not owned by `owner_id`
    """
    permission = (
        db.query(models.Permission)
        .filter(
            models.Permission.id == permission_id,
            models.Permission.owner_id == owner_id,
            models.Permission.is_active == True,  # noqa: E712
        )
        .first()
    )
    if permission is None:
        logger.info(f"Permission {permission_id} not found for owner {owner_id}")
        raise NotFoundError("Permission not found")

    previous_level = permission.level
    permission.level = models.PermissionLevel(new_level)

    log_audit(
        db,
        user_id=owner_id,
        action=models.AuditAction.permission_update,
        entity_type="Permission",
        entity_id=permission.id,
        target_user_id=permission.assistant_id,
        previous_state={"level": previous_level.value},
        new_state={"level": permission.level.value},
    )
    db.commit()
    db.refresh(permission)

    logger.info(
        f"Permission {permission_id} level changed by owner {owner_id}: "
        f"{previous_level.value} -> {permission.level.value}"
    )
    return permission


# ============== Queries ==============

def find_assistants(owner_id: str, db: Session) -> List[models.Permission]:
    """Active grants where the user is the owner (people who can access my data)."""
    return (
        db.query(models.Permission)
        .filter(models.Permission.owner_id == owner_id, models.Permission.is_active == True)  # noqa: E712
        .order_by(models.Permission.created_at.desc())
        .all()
    )


def find_delegators(assistant_id: str, db: Session) -> List[models.Permission]:
    """Active grants where the user is the assistant (people whose data I can access)."""
    return (
        db.query(models.Permission)
        .filter(models.Permission.assistant_id == assistant_id, models.Permission.is_active == True)  # noqa: E712
        .order_by(models.Permission.created_at.desc())
        .all()
    )


def find_pending_invitations(email: str, db: Session) -> List[models.PermissionInvitation]:
    """
    Pending invitations addressed to an email, newest first.

    Invitations found past their expiry are marked expired and left out.
    """
    invitations = (
        db.query(models.PermissionInvitation)
        .filter(
            models.PermissionInvitation.email == email.strip().lower(),
            models.PermissionInvitation.status == models.InvitationStatus.pending,
        )
        .order_by(models.PermissionInvitation.created_at.desc())
        .all()
    )

    pending = []
    expired_count = 0
    for invitation in invitations:
        if is_expired(invitation.expires_at):
            invitation.status = models.InvitationStatus.expired
            expired_count += 1
        else:
            pending.append(invitation)

    if expired_count:
        db.commit()
        logger.info(f"Marked {expired_count} invitation(s) for {email} as expired")

    return pending
