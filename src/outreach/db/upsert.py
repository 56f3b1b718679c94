"""
Idempotent upsert helpers keyed by natural composite keys.

Every synced row has a stable natural key (tenant, platform, platform id or
date). Upserting by that key is what makes re-syncs and resumed runs safe:
a row seen twice is merged, never duplicated.
"""
from typing import Any, Dict, Tuple, Type, TypeVar

from sqlmodel import Session, SQLModel, select

T = TypeVar("T", bound=SQLModel)


def _key_clause(model: Type[T], key: Dict[str, Any]):
    return [getattr(model, k) == v for k, v in key.items()]


def upsert(session: Session, model: Type[T], key: Dict[str, Any], values: Dict[str, Any]) -> T:
    """
    Insert or update the row identified by key. Caller commits.

    Args:
        session: Open session.
        model: SQLModel table class.
        key: Natural key column → value.
        values: Non-key columns to set.

    Returns:
        The persisted (flushed) row, with its primary key populated.
    """
    existing = session.exec(select(model).where(*_key_clause(model, key))).first()
    if existing:
        # Update scalar fields in-place (keeps same id)
        for k, v in values.items():
            setattr(existing, k, v)
        session.add(existing)
        session.flush()
        return existing

    row = model(**key, **values)
    session.add(row)
    session.flush()
    return row


def insert_if_absent(
    session: Session, model: Type[T], key: Dict[str, Any], values: Dict[str, Any]
) -> Tuple[T, bool]:
    """
    Insert the row unless one with the same key exists. Caller commits.

    Returns:
        (row, created) — created is False when the key was already present.
    """
    existing = session.exec(select(model).where(*_key_clause(model, key))).first()
    if existing:
        return existing, False
    row = model(**key, **values)
    session.add(row)
    session.flush()
    return row, True
