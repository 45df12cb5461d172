"""
Optimistic-concurrency primitives shared by the sync reconciler and the
task/project services.

Versioned entities (Task, Project) carry an integer `sync_version`. Every
accepted mutation is a single conditional UPDATE that matches the version the
writer observed and increments it by exactly one, so a concurrent writer can
never be silently overwritten.
"""

import logging
from typing import Any, Dict, Type

from sqlalchemy.orm import Session

from time_utils import utc_now

logger = logging.getLogger(__name__)

VersionedModel = Type[Any]  # models.Task or models.Project


def find_owned(
    db: Session,
    model: VersionedModel,
    entity_id: str,
    user_id: str,
    include_deleted: bool = False,
):
    """Look up an entity by id scoped to its owner; tombstones excluded unless asked for."""
    query = db.query(model).filter(model.id == entity_id, model.user_id == user_id)
    if not include_deleted:
        query = query.filter(model.deleted_at.is_(None))
    return query.first()


def compare_and_set(
    db: Session,
    model: VersionedModel,
    entity_id: str,
    user_id: str,
    expected_version: int,
    values: Dict[str, Any],
) -> bool:
    """
    Atomically apply `values` and bump `sync_version` if the stored version
    still equals `expected_version`.

    The statement is flushed but not committed; the caller owns the
    transaction.

    Args:
        db: Database session
        model: Versioned model class
        entity_id: Entity primary key
        user_id: Owning user
        expected_version: Version the writer last observed
        values: Column attribute values to write

    Returns:
        True if exactly one row was updated, False if the version moved on
        (or the entity is gone)
    """
    now = utc_now()
    update_values = dict(values)
    update_values["sync_version"] = model.sync_version + 1
    update_values["updated_at"] = now

    rowcount = (
        db.query(model)
        .filter(
            model.id == entity_id,
            model.user_id == user_id,
            model.sync_version == expected_version,
            model.deleted_at.is_(None),
        )
        .update(update_values, synchronize_session=False)
    )

    if rowcount != 1:
        logger.info(
            f"Version check failed for {model.__tablename__} {entity_id}: "
            f"expected sync_version {expected_version}"
        )
        return False

    logger.debug(f"{model.__tablename__} {entity_id} updated: sync_version {expected_version} -> {expected_version + 1}")
    return True


def soft_delete(
    db: Session,
    model: VersionedModel,
    entity_id: str,
    user_id: str,
    expected_version: int,
) -> bool:
    """Tombstone an entity with the same version check as compare_and_set."""
    return compare_and_set(db, model, entity_id, user_id, expected_version, {"deleted_at": utc_now()})

