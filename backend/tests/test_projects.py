"""
Tests for project and tag endpoints.
"""

import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
import project_service
from time_utils import utc_now

logger = logging.getLogger(__name__)


# ============== Projects ==============


def test_create_project(client: TestClient, test_db: Session, owner_user: models.User, owner_headers):
    response = client.post(
        "/api/projects",
        json={"name": "Groceries", "color": "#10B981", "icon": "cart"},
        headers=owner_headers,
    )

    assert response.status_code == 201, response.json()
    data = response.json()
    assert data["name"] == "Groceries"
    assert data["color"] == "#10B981"
    assert data["is_archived"] is False
    assert data["sync_version"] == 1

    entry = test_db.query(models.AuditLog).filter_by(action="project.create").one()
    assert entry.entity_id == data["id"]
    assert entry.user_id == owner_user.id
    logger.info("✓ Project created")


def test_create_project_rejects_bad_color(client: TestClient, owner_headers):
    response = client.post("/api/projects", json={"name": "X", "color": "red"}, headers=owner_headers)
    assert response.status_code == 422


def test_list_projects(
    client: TestClient,
    owner_user: models.User,
    other_user: models.User,
    owner_headers,
    make_project
):
    active = make_project(owner_user, "Active")
    archived = make_project(owner_user, "Archived", is_archived=True)
    make_project(owner_user, "Deleted", deleted_at=utc_now())
    make_project(other_user, "Not mine")

    everything = client.get("/api/projects", headers=owner_headers).json()
    live_only = client.get("/api/projects", params={"include_archived": "false"}, headers=owner_headers).json()

    assert {p["id"] for p in everything} == {active.id, archived.id}
    assert [p["id"] for p in live_only] == [active.id]


def test_update_project(client: TestClient, test_db: Session, owner_user: models.User, owner_headers, make_project):
    project = make_project(owner_user, "Old name")

    response = client.patch(
        f"/api/projects/{project.id}",
        json={"name": "New name", "sync_version": 1},
        headers=owner_headers,
    )

    assert response.status_code == 200, response.json()
    assert response.json()["name"] == "New name"
    assert response.json()["sync_version"] == 2

    entry = test_db.query(models.AuditLog).filter_by(action="project.update").one()
    assert entry.previous_state["name"] == "Old name"
    assert entry.new_state["name"] == "New name"
    assert entry.audit_metadata == {"fields": ["name"]}


def test_stale_project_update_conflicts(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers,
    make_project
):
    project = make_project(owner_user, "Current", sync_version=4)

    response = client.patch(
        f"/api/projects/{project.id}",
        json={"name": "Stale", "sync_version": 3},
        headers=owner_headers,
    )

    assert response.status_code == 409
    test_db.refresh(project)
    assert project.name == "Current"
    assert project.sync_version == 4


def test_archive_project(client: TestClient, test_db: Session, owner_user: models.User, owner_headers, make_project):
    project = make_project(owner_user, "Finished")

    response = client.post(f"/api/projects/{project.id}/archive", headers=owner_headers)

    assert response.status_code == 200, response.json()
    assert response.json()["is_archived"] is True
    assert response.json()["sync_version"] == 2

    entry = test_db.query(models.AuditLog).filter_by(action="project.archive").one()
    assert entry.previous_state["is_archived"] is False
    assert entry.new_state["is_archived"] is True


def test_delete_project_keeps_tasks(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers,
    make_project,
    make_task
):
    project = make_project(owner_user, "Doomed")
    task = make_task(owner_user, "Survivor", project_id=project.id)

    response = client.delete(f"/api/projects/{project.id}", headers=owner_headers)

    assert response.status_code == 204
    test_db.refresh(project)
    assert project.deleted_at is not None
    assert project.sync_version == 2
    assert client.get(f"/api/projects/{project.id}", headers=owner_headers).status_code == 404
    assert client.get(f"/api/tasks/{task.id}", headers=owner_headers).status_code == 200


def test_delegated_project_access(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    assistant_user: models.User,
    assistant_headers,
    grant,
    make_project
):
    """Edit access may archive but not delete; audit names the assistant and the owner."""
    grant(owner_user, assistant_user, models.PermissionLevel.edit)
    project = make_project(owner_user, "Shared")
    params = {"for_user_id": owner_user.id}

    archived = client.post(f"/api/projects/{project.id}/archive", params=params, headers=assistant_headers)
    deleted = client.delete(f"/api/projects/{project.id}", params=params, headers=assistant_headers)

    assert archived.status_code == 200, archived.json()
    assert deleted.status_code == 403

    entry = test_db.query(models.AuditLog).filter_by(action="project.archive").one()
    assert entry.user_id == assistant_user.id
    assert entry.target_user_id == owner_user.id


def test_project_not_visible_to_other_user(
    client: TestClient,
    owner_user: models.User,
    other_headers,
    make_project
):
    project = make_project(owner_user, "Private")

    assert client.get(f"/api/projects/{project.id}", headers=other_headers).status_code == 404
    assert client.get(
        f"/api/projects/{project.id}", params={"for_user_id": owner_user.id}, headers=other_headers
    ).status_code == 403


# ============== Tags ==============


def test_tag_crud(client: TestClient, owner_headers):
    created = client.post("/api/tags", json={"name": "work", "color": "#3B82F6"}, headers=owner_headers)
    assert created.status_code == 201, created.json()
    tag_id = created.json()["id"]

    client.post("/api/tags", json={"name": "errands"}, headers=owner_headers)
    names = [t["name"] for t in client.get("/api/tags", headers=owner_headers).json()]
    assert names == ["errands", "work"], "Tags are listed by name"

    updated = client.patch(f"/api/tags/{tag_id}", json={"name": "office"}, headers=owner_headers)
    assert updated.status_code == 200
    assert updated.json()["name"] == "office"
    assert updated.json()["color"] == "#3B82F6"

    assert client.delete(f"/api/tags/{tag_id}", headers=owner_headers).status_code == 204
    assert [t["name"] for t in client.get("/api/tags", headers=owner_headers).json()] == ["errands"]


def test_tags_are_owner_only(client: TestClient, owner_headers, other_headers):
    tag_id = client.post("/api/tags", json={"name": "mine"}, headers=owner_headers).json()["id"]

    assert client.get("/api/tags", headers=other_headers).json() == []
    assert client.patch(f"/api/tags/{tag_id}", json={"name": "stolen"}, headers=other_headers).status_code == 404
    assert client.delete(f"/api/tags/{tag_id}", headers=other_headers).status_code == 404


def test_deleting_tag_detaches_it_from_tasks(
    client: TestClient,
    owner_user: models.User,
    owner_headers,
    make_task
):
    task = make_task(owner_user, "Tagged")
    tag_id = client.post("/api/tags", json={"name": "temp"}, headers=owner_headers).json()["id"]
    client.patch(f"/api/tasks/{task.id}", json={"tag_ids": [tag_id]}, headers=owner_headers)

    client.delete(f"/api/tags/{tag_id}", headers=owner_headers)

    response = client.get(f"/api/tasks/{task.id}", headers=owner_headers)
    assert response.status_code == 200
    assert response.json()["tags"] == []


def test_archive_losing_race_returns_conflict(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers,
    make_project,
    concurrent_write
):
    project = make_project(owner_user, "Original")
    concurrent_write(project_service, {"name": "Theirs"})

    response = client.post(f"/api/projects/{project.id}/archive", headers=owner_headers)

    assert response.status_code == 409, response.json()
    test_db.refresh(project)
    assert project.name == "Theirs"
    assert project.is_archived is False
    assert test_db.query(models.AuditLog).filter_by(action="project.archive").count() == 0
