"""
Document persistence.
This module is where document/entity/link SQL lives.

Write helpers take an explicit `conn` so the caller can run them inside one
transaction (see `core.db.transaction`). Read helpers for the HTTP layer go
through the pool directly.

Schema comes from the dbmate migration in `db/migrations/`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import asyncpg

from core import db


@dataclass(frozen=True)
class EntityKind:
    """
    Table layout of one normalized entity kind.

    Table and column names are interpolated into SQL, so they must only ever
    come from the constants below.
    """

    name: str
    table: str
    link_table: str
    link_column: str


AUTHORS = EntityKind(name="author", table="authors", link_table="document_authors", link_column="author_id")
CATEGORIES = EntityKind(
    name="category",
    table="categories",
    link_table="document_categories",
    link_column="category_id",
)
KEYWORDS = EntityKind(name="keyword", table="keywords", link_table="document_keywords", link_column="keyword_id")

# Link order of a submission.
ENTITY_KINDS: tuple[EntityKind, ...] = (AUTHORS, CATEGORIES, KEYWORDS)


async def find_document_id_by_title(conn: asyncpg.Connection, title: str) -> int | None:
    row = await conn.fetchrow(
        """
        SELECT id
        FROM documents
        WHERE title = $1
        LIMIT 1
        """,
        title,
    )
    return int(row["id"]) if row is not None else None


async def insert_document(
    conn: asyncpg.Connection,
    *,
    title: str,
    abstract: str,
    file_ref: str,
) -> int:
    """
    Insert a document row and return its id. `publish_date` defaults to now().

    Raises asyncpg.UniqueViolationError when a concurrent submission already
    committed the same title.
    """
    row = await conn.fetchrow(
        """
        INSERT INTO documents (title, abstract, file_ref)
        VALUES ($1, $2, $3)
        RETURNING id
        """,
        title,
        abstract,
        file_ref,
    )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert document.")
    return int(row["id"])


async def find_entity_id(conn: asyncpg.Connection, kind: EntityKind, name: str) -> int | None:
    row = await conn.fetchrow(
        f"""
        SELECT id
        FROM {kind.table}
        WHERE lower(name) = lower($1)
        LIMIT 1
        """,
        name,
    )
    return int(row["id"]) if row is not None else None


async def insert_entity(conn: asyncpg.Connection, kind: EntityKind, name: str) -> int | None:
    """
    Create an entity and return its id, or None when the name already exists.

    ON CONFLICT waits for a concurrent inserter of the same name to finish
    instead of raising, so the surrounding transaction stays usable and the
    caller can re-read the winner's row.
    """
    row = await conn.fetchrow(
        f"""
        INSERT INTO {kind.table} (name)
        VALUES ($1)
        ON CONFLICT ((lower(name))) DO NOTHING
        RETURNING id
        """,
        name,
    )
    return int(row["id"]) if row is not None else None


async def link_entities(
    conn: asyncpg.Connection,
    kind: EntityKind,
    document_id: int,
    entity_ids: list[int],
) -> None:
    """
    Insert (document, entity) link rows. An existing pair is left as is.
    """
    if not entity_ids:
        return

    records = [(document_id, entity_id) for entity_id in entity_ids]
    await conn.executemany(
        f"""
        INSERT INTO {kind.link_table} (document_id, {kind.link_column})
        VALUES ($1, $2)
        ON CONFLICT DO NOTHING
        """,
        records,
    )


async def get_document(document_id: int) -> dict[str, Any] | None:
    return await db.fetch_one(
        """
        SELECT id, title, publish_date, abstract, file_ref
        FROM documents
        WHERE id = $1
        """,
        document_id,
    )


async def list_linked_names(document_id: int, kind: EntityKind) -> list[str]:
    rows = await db.fetch_all(
        f"""
        SELECT e.name
        FROM {kind.link_table} l
        JOIN {kind.table} e ON e.id = l.{kind.link_column}
        WHERE l.document_id = $1
        ORDER BY e.id
        """,
        document_id,
    )
    return [str(row["name"]) for row in rows]
