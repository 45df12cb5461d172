"""
Tests for delegated access: permission levels, the authorization gate, and
the invitation lifecycle.

Covers:
- Level ordering (view < edit < full) and inactive grants
- Self-access bypass in the authorization gate
- Invitation single-flight per owner/email, expiry on accept, decline
- Accepting supersedes earlier grants for the same pair
- Revocation by either party, level changes by the owner only
- Audit entries for every state change
"""

import logging
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from auth import permissions
from errors import ForbiddenError
from time_utils import utc_now

logger = logging.getLogger(__name__)


def invite(client: TestClient, headers, email: str, level: str = "edit"):
    return client.post(
        "/api/permissions/invite",
        json={"assistant_email": email, "level": level},
        headers=headers,
    )


def audit_actions(db: Session, **filters):
    query = db.query(models.AuditLog)
    for column, value in filters.items():
        query = query.filter(getattr(models.AuditLog, column) == value)
    return [entry.action for entry in query.order_by(models.AuditLog.created_at.asc()).all()]


# ============== Level ordering ==============


@pytest.mark.parametrize("granted,required,expected", [
    (models.PermissionLevel.view, models.PermissionLevel.view, True),
    (models.PermissionLevel.view, models.PermissionLevel.edit, False),
    (models.PermissionLevel.view, models.PermissionLevel.full, False),
    (models.PermissionLevel.edit, models.PermissionLevel.view, True),
    (models.PermissionLevel.edit, models.PermissionLevel.edit, True),
    (models.PermissionLevel.edit, models.PermissionLevel.full, False),
    (models.PermissionLevel.full, models.PermissionLevel.view, True),
    (models.PermissionLevel.full, models.PermissionLevel.edit, True),
    (models.PermissionLevel.full, models.PermissionLevel.full, True),
])
def test_check_permission_respects_level_order(
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    grant,
    granted,
    required,
    expected
):
    """A grant satisfies every level at or below its own rank."""
    grant(owner_user, assistant_user, granted)

    result = permissions.check_permission(assistant_user.id, owner_user.id, required, test_db)

    assert result is expected, f"{granted.value} grant vs {required.value} requirement"


def test_level_rank_order():
    assert permissions.level_rank(models.PermissionLevel.view) < permissions.level_rank(models.PermissionLevel.edit)
    assert permissions.level_rank(models.PermissionLevel.edit) < permissions.level_rank(models.PermissionLevel.full)


def test_inactive_grant_does_not_authorize(
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    grant
):
    permission = grant(owner_user, assistant_user, models.PermissionLevel.full)
    permission.is_active = False
    test_db.commit()

    assert not permissions.check_permission(
        assistant_user.id, owner_user.id, models.PermissionLevel.view, test_db
    )
    assert permissions.get_permission_level(assistant_user.id, owner_user.id, test_db) is None
    logger.info("✓ Inactive grant ignored")


def test_grant_is_directional(
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    grant
):
    """A grant from owner to assistant gives the owner nothing over the assistant's data."""
    grant(owner_user, assistant_user, models.PermissionLevel.full)

    assert not permissions.check_permission(
        owner_user.id, assistant_user.id, models.PermissionLevel.view, test_db
    )


def test_authorize_self_and_anonymous_bypass(test_db: Session, owner_user: models.User):
    """Acting on your own data needs no grant."""
    permissions.authorize(owner_user.id, owner_user.id, models.PermissionLevel.full, test_db)
    permissions.authorize(None, owner_user.id, models.PermissionLevel.full, test_db)


def test_authorize_rejects_insufficient_level(
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    grant
):
    grant(owner_user, assistant_user, models.PermissionLevel.view)

    with pytest.raises(ForbiddenError) as exc_info:
        permissions.authorize(assistant_user.id, owner_user.id, models.PermissionLevel.edit, test_db)

    assert exc_info.value.status_code == 403
    assert "edit" in exc_info.value.detail


# ============== Invitations ==============


def test_create_invitation(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers
):
    """Invitation is created pending with a token and a default 7 day expiry."""
    response = invite(client, owner_headers, "Assistant@Test.com")

    assert response.status_code == 201, response.json()
    data = response.json()
    assert data["status"] == "pending"
    assert data["email"] == "assistant@test.com", "Email should be normalized to lowercase"
    assert data["level"] == "edit"
    assert data["owner_id"] == owner_user.id
    assert len(data["token"]) >= 32

    invitation = test_db.query(models.PermissionInvitation).filter_by(id=data["id"]).one()
    expected_expiry = utc_now() + timedelta(days=permissions.INVITATION_EXPIRE_DAYS)
    delta = abs((invitation.expires_at.replace(tzinfo=None) - expected_expiry.replace(tzinfo=None)).total_seconds())
    assert delta < 60, "Default expiry should be INVITATION_EXPIRE_DAYS from now"

    assert audit_actions(test_db, user_id=owner_user.id) == ["invitation.send"]
    logger.info("✓ Invitation created")


def test_duplicate_pending_invitation_rejected(client: TestClient, owner_headers):
    """Only one pending invitation per owner and email."""
    first = invite(client, owner_headers, "assistant@test.com")
    assert first.status_code == 201

    second = invite(client, owner_headers, "assistant@test.com", level="full")

    assert second.status_code == 409, second.json()
    assert second.json()["detail"] == "An active invitation already exists for this email"


def test_expired_pending_invitation_does_not_block_new_one(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers
):
    stale = models.PermissionInvitation(
        owner_id=owner_user.id,
        email="assistant@test.com",
        level=models.PermissionLevel.view,
        status=models.InvitationStatus.pending,
        token="stale-token",
        expires_at=utc_now() - timedelta(days=1),
    )
    test_db.add(stale)
    test_db.commit()

    response = invite(client, owner_headers, "assistant@test.com")

    assert response.status_code == 201, response.json()
    test_db.refresh(stale)
    assert stale.status == models.InvitationStatus.expired


def test_invite_rejects_invalid_email(client: TestClient, owner_headers):
    response = invite(client, owner_headers, "not-an-email")
    assert response.status_code == 422


def test_accept_invitation_creates_grant(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    owner_headers,
    assistant_headers
):
    token = invite(client, owner_headers, "assistant@test.com", level="edit").json()["token"]

    response = client.post(f"/api/permissions/accept/{token}", headers=assistant_headers)

    assert response.status_code == 200, response.json()
    data = response.json()
    assert data["owner_id"] == owner_user.id
    assert data["assistant_id"] == assistant_user.id
    assert data["level"] == "edit"
    assert data["is_active"] is True

    invitation = test_db.query(models.PermissionInvitation).filter_by(token=token).one()
    assert invitation.status == models.InvitationStatus.accepted

    assert permissions.check_permission(assistant_user.id, owner_user.id, models.PermissionLevel.edit, test_db)

    entry = test_db.query(models.AuditLog).filter_by(action="invitation.accept").one()
    assert entry.user_id == assistant_user.id
    assert entry.target_user_id == owner_user.id, "Accept should be tagged with the owner as target"
    logger.info("✓ Invitation accepted and grant created")


def test_accept_twice_rejected(client: TestClient, owner_headers, assistant_headers):
    token = invite(client, owner_headers, "assistant@test.com").json()["token"]
    assert client.post(f"/api/permissions/accept/{token}", headers=assistant_headers).status_code == 200

    response = client.post(f"/api/permissions/accept/{token}", headers=assistant_headers)

    assert response.status_code == 400, response.json()
    assert response.json()["detail"] == "Invitation is no longer valid"


def test_accept_unknown_token(client: TestClient, assistant_headers):
    response = client.post("/api/permissions/accept/no-such-token", headers=assistant_headers)
    assert response.status_code == 404


def test_accept_expired_invitation_marks_expired(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    assistant_headers
):
    """Accepting past expiry fails and persists the expired status."""
    invitation = models.PermissionInvitation(
        owner_id=owner_user.id,
        email="assistant@test.com",
        level=models.PermissionLevel.edit,
        status=models.InvitationStatus.pending,
        token="expired-token",
        expires_at=utc_now() - timedelta(minutes=5),
    )
    test_db.add(invitation)
    test_db.commit()

    response = client.post("/api/permissions/accept/expired-token", headers=assistant_headers)

    assert response.status_code == 410, response.json()
    assert response.json()["detail"] == "Invitation has expired"

    test_db.refresh(invitation)
    assert invitation.status == models.InvitationStatus.expired
    assert test_db.query(models.Permission).count() == 0
    assert not permissions.check_permission(
        assistant_user.id, owner_user.id, models.PermissionLevel.view, test_db
    )

    # Terminal now: a second attempt reports the invalid state
    retry = client.post("/api/permissions/accept/expired-token", headers=assistant_headers)
    assert retry.status_code == 400
    logger.info("✓ Expired invitation rejected and marked expired")


def test_owner_cannot_accept_own_invitation(client: TestClient, test_db: Session, owner_headers):
    token = invite(client, owner_headers, "assistant@test.com").json()["token"]

    response = client.post(f"/api/permissions/accept/{token}", headers=owner_headers)

    assert response.status_code == 400, response.json()
    invitation = test_db.query(models.PermissionInvitation).filter_by(token=token).one()
    assert invitation.status == models.InvitationStatus.pending


def test_decline_invitation(
    client: TestClient,
    test_db: Session,
    assistant_user: models.User,
    owner_headers,
    assistant_headers
):
    token = invite(client, owner_headers, "assistant@test.com").json()["token"]

    response = client.post(f"/api/permissions/decline/{token}", headers=assistant_headers)

    assert response.status_code == 200, response.json()
    assert response.json()["status"] == "declined"
    assert audit_actions(test_db, user_id=assistant_user.id) == ["invitation.decline"]

    accept = client.post(f"/api/permissions/accept/{token}", headers=assistant_headers)
    assert accept.status_code == 400, "Declined invitation must not be accepted later"


def test_accept_supersedes_previous_grant(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    owner_headers,
    assistant_headers,
    grant
):
    """At most one active grant per owner/assistant pair."""
    old = grant(owner_user, assistant_user, models.PermissionLevel.view)
    token = invite(client, owner_headers, "assistant@test.com", level="full").json()["token"]

    response = client.post(f"/api/permissions/accept/{token}", headers=assistant_headers)

    assert response.status_code == 200, response.json()
    active = test_db.query(models.Permission).filter_by(
        owner_id=owner_user.id, assistant_id=assistant_user.id, is_active=True
    ).all()
    assert len(active) == 1
    assert active[0].level == models.PermissionLevel.full
    test_db.refresh(old)
    assert old.is_active is False


def test_pending_invitations_for_current_user(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers,
    assistant_headers
):
    """Pending list is addressed by email; expired entries are flipped and omitted."""
    invite(client, owner_headers, "assistant@test.com")
    invite(client, owner_headers, "other@test.com")
    expired = models.PermissionInvitation(
        owner_id=owner_user.id,
        email="assistant@test.com",
        level=models.PermissionLevel.view,
        status=models.InvitationStatus.pending,
        token="old-token",
        expires_at=utc_now() - timedelta(hours=1),
    )
    test_db.add(expired)
    test_db.commit()

    response = client.get("/api/permissions/pending", headers=assistant_headers)

    assert response.status_code == 200, response.json()
    data = response.json()
    assert len(data) == 1
    assert data[0]["email"] == "assistant@test.com"
    assert data[0]["owner"]["email"] == "owner@test.com"
    test_db.refresh(expired)
    assert expired.status == models.InvitationStatus.expired


# ============== Grants ==============


def test_assistants_and_delegators(
    client: TestClient,
    owner_user: models.User,
    assistant_user: models.User,
    owner_headers,
    assistant_headers,
    grant
):
    grant(owner_user, assistant_user, models.PermissionLevel.edit)

    assistants = client.get("/api/permissions/assistants", headers=owner_headers).json()
    delegators = client.get("/api/permissions/delegators", headers=assistant_headers).json()

    assert [p["assistant_id"] for p in assistants] == [assistant_user.id]
    assert [p["owner_id"] for p in delegators] == [owner_user.id]
    assert client.get("/api/permissions/delegators", headers=owner_headers).json() == []


def test_owner_revokes_permission(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    owner_headers,
    grant
):
    permission = grant(owner_user, assistant_user, models.PermissionLevel.edit)

    response = client.delete(f"/api/permissions/{permission.id}", headers=owner_headers)

    assert response.status_code == 204
    test_db.refresh(permission)
    assert permission.is_active is False, "Revocation deactivates, never deletes"
    assert not permissions.check_permission(
        assistant_user.id, owner_user.id, models.PermissionLevel.view, test_db
    )

    entry = test_db.query(models.AuditLog).filter_by(action="permission.revoke").one()
    assert entry.previous_state == {"level": "edit", "is_active": True}
    assert entry.new_state == {"level": "edit", "is_active": False}
    assert entry.target_user_id == assistant_user.id

    again = client.delete(f"/api/permissions/{permission.id}", headers=owner_headers)
    assert again.status_code == 400
    logger.info("✓ Owner revoked permission")


def test_assistant_can_revoke_own_access(
    client: TestClient,
    owner_user: models.User,
    assistant_user: models.User,
    assistant_headers,
    grant
):
    permission = grant(owner_user, assistant_user, models.PermissionLevel.view)

    response = client.delete(f"/api/permissions/{permission.id}", headers=assistant_headers)

    assert response.status_code == 204


def test_unrelated_user_cannot_revoke(
    client: TestClient,
    owner_user: models.User,
    assistant_user: models.User,
    other_headers,
    grant
):
    permission = grant(owner_user, assistant_user, models.PermissionLevel.view)

    response = client.delete(f"/api/permissions/{permission.id}", headers=other_headers)

    assert response.status_code == 403
    assert client.delete("/api/permissions/missing-id", headers=other_headers).status_code == 404


def test_owner_updates_level(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    owner_headers,
    grant
):
    permission = grant(owner_user, assistant_user, models.PermissionLevel.view)

    response = client.patch(
        f"/api/permissions/{permission.id}",
        json={"level": "full"},
        headers=owner_headers,
    )

    assert response.status_code == 200, response.json()
    assert response.json()["level"] == "full"
    assert permissions.check_permission(assistant_user.id, owner_user.id, models.PermissionLevel.full, test_db)

    entry = test_db.query(models.AuditLog).filter_by(action="permission.update").one()
    assert entry.previous_state == {"level": "view"}
    assert entry.new_state == {"level": "full"}


def test_assistant_cannot_update_level(
    client: TestClient,
    owner_user: models.User,
    assistant_user: models.User,
    assistant_headers,
    grant
):
    """Level changes are owner-only; to anyone else the grant does not exist."""
    permission = grant(owner_user, assistant_user, models.PermissionLevel.view)

    response = client.patch(
        f"/api/permissions/{permission.id}",
        json={"level": "full"},
        headers=assistant_headers,
    )

    assert response.status_code == 404


def test_permission_endpoints_require_auth(client: TestClient):
    assert client.get("/api/permissions/assistants").status_code == 401
    assert client.post("/api/permissions/invite", json={"assistant_email": "a@b.com"}).status_code == 401
