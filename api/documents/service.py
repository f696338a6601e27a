"""
Document submission "service layer".

This file contains logic that is independent of FastAPI's routing layer:
- validate a submission
- guard title uniqueness
- create the document row
- normalize authors/categories/keywords (find-or-create) and link them

The whole submission runs in one transaction: either the document, every
newly created entity and every link row commit together, or none of them do.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import asyncpg

from core import config, db

from . import repository
from .errors import ConflictError, DocumentError, PersistenceError, ValidationError
from .repository import EntityKind

DEFAULT_SUBMISSION_TIMEOUT_S = 30.0

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Submission:
    title: str
    file_ref: str
    authors: str = ""
    categories: str = ""
    keywords: str = ""
    abstract: str = ""

    def raw_names(self, kind: EntityKind) -> str:
        return {
            repository.AUTHORS.name: self.authors,
            repository.CATEGORIES.name: self.categories,
            repository.KEYWORDS.name: self.keywords,
        }[kind.name]


def submission_timeout() -> float:
    value = config.env_float("SUBMISSION_TIMEOUT_S", DEFAULT_SUBMISSION_TIMEOUT_S)
    return value if value > 0 else DEFAULT_SUBMISSION_TIMEOUT_S


def split_names(raw: str | None) -> list[str]:
    """
    Split a comma-separated field into distinct, trimmed names.

    Duplicates are detected case-insensitively and the first spelling wins:
    "AI, ai , ML" -> ["AI", "ML"].
    """
    names: list[str] = []
    seen: set[str] = set()
    for token in (raw or "").split(","):
        name = token.strip()
        if not name:
            continue
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


def validate_submission(submission: Submission) -> Submission:
    title = (submission.title or "").strip()
    if not title:
        raise ValidationError("Title is required.")
    if not (submission.file_ref or "").strip():
        raise ValidationError("No file received.")
    return Submission(
        title=title,
        file_ref=submission.file_ref.strip(),
        authors=submission.authors or "",
        categories=submission.categories or "",
        keywords=submission.keywords or "",
        abstract=submission.abstract or "",
    )


async def ensure_title_available(conn: asyncpg.Connection, title: str) -> None:
    existing_id = await repository.find_document_id_by_title(conn, title)
    if existing_id is not None:
        raise ConflictError("Document with this title already exists.")


async def resolve_entity(conn: asyncpg.Connection, kind: EntityKind, name: str) -> int:
    """
    Find-or-create one entity by name.

    When the insert yields nothing another transaction created the name in the
    meantime; its committed row is read back instead.
    """
    entity_id = await repository.find_entity_id(conn, kind, name)
    if entity_id is not None:
        return entity_id

    entity_id = await repository.insert_entity(conn, kind, name)
    if entity_id is not None:
        logger.debug("entity_created kind=%s id=%s name=%r", kind.name, entity_id, name)
        return entity_id

    entity_id = await repository.find_entity_id(conn, kind, name)
    if entity_id is None:
        raise RuntimeError(f"{kind.name} {name!r} vanished after a create conflict.")
    return entity_id


async def normalize_entities(conn: asyncpg.Connection, kind: EntityKind, raw: str | None) -> list[int]:
    """
    Resolve a comma-separated field to entity ids, one per distinct name, in
    input order. An empty field resolves to [].

    Names are created in case-insensitive sorted order so that concurrent
    submissions take the unique-index locks in the same order and cannot
    deadlock on each other's new names.
    """
    names = split_names(raw)
    resolved: dict[str, int] = {}
    for name in sorted(names, key=str.lower):
        resolved[name] = await resolve_entity(conn, kind, name)
    return [resolved[name] for name in names]


async def link_entities(
    conn: asyncpg.Connection,
    kind: EntityKind,
    document_id: int,
    raw: str | None,
) -> list[int]:
    entity_ids = await normalize_entities(conn, kind, raw)
    await repository.link_entities(conn, kind, document_id, entity_ids)
    logger.debug("entities_linked kind=%s document_id=%s count=%s", kind.name, document_id, len(entity_ids))
    return entity_ids


async def _write_submission(conn: asyncpg.Connection, submission: Submission) -> tuple[int, dict[str, int]]:
    await ensure_title_available(conn, submission.title)
    logger.debug("submission_title_checked title=%r", submission.title)

    try:
        document_id = await repository.insert_document(
            conn,
            title=submission.title,
            abstract=submission.abstract,
            file_ref=submission.file_ref,
        )
    except asyncpg.UniqueViolationError as exc:
        logger.warning("submission_title_race title=%r", submission.title)
        raise PersistenceError("Title was taken by a concurrent submission.") from exc
    logger.debug("submission_document_created document_id=%s", document_id)

    linked: dict[str, int] = {}
    for kind in repository.ENTITY_KINDS:
        entity_ids = await link_entities(conn, kind, document_id, submission.raw_names(kind))
        linked[kind.name] = len(entity_ids)

    return document_id, linked


async def create_document(submission: Submission, *, timeout: float | None = None) -> int:
    """
    Validate and persist a submission, returning the new document id.

    Raises ValidationError or ConflictError before anything is written, and
    PersistenceError for any failure after that (always rolled back).
    `timeout` bounds waiting for a pooled connection and the statements of
    the unit of work; expiry rolls back. COMMIT stays outside it, so a
    timeout never reports failure for a submission that was committed.
    """
    submission = validate_submission(submission)
    limit = submission_timeout() if timeout is None else timeout

    try:
        async with db.transaction(acquire_timeout=limit) as conn:
            document_id, linked = await asyncio.wait_for(_write_submission(conn, submission), timeout=limit)
    except DocumentError:
        raise
    except asyncio.TimeoutError as exc:
        logger.error("submission_timed_out title=%r timeout_s=%s", submission.title, limit)
        raise PersistenceError(f"Submission did not finish within {limit} seconds.") from exc
    except Exception as exc:
        logger.exception("submission_failed title=%r", submission.title)
        raise PersistenceError("Error processing upload.") from exc

    logger.info(
        "document_created document_id=%s file_ref=%s authors=%s categories=%s keywords=%s",
        document_id,
        submission.file_ref,
        linked.get(repository.AUTHORS.name, 0),
        linked.get(repository.CATEGORIES.name, 0),
        linked.get(repository.KEYWORDS.name, 0),
    )
    return document_id


async def get_document(document_id: int) -> dict[str, Any] | None:
    """
    Read a document back together with its linked entity names.
    """
    row = await repository.get_document(document_id)
    if row is None:
        return None

    document = {
        "id": int(row["id"]),
        "title": str(row["title"]),
        "publish_date": row["publish_date"],
        "abstract": str(row["abstract"] or ""),
        "file_ref": str(row["file_ref"]),
    }
    document["authors"] = await repository.list_linked_names(document_id, repository.AUTHORS)
    document["categories"] = await repository.list_linked_names(document_id, repository.CATEGORIES)
    document["keywords"] = await repository.list_linked_names(document_id, repository.KEYWORDS)
    return document
