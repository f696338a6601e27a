"""
Shared fixtures.

`store` swaps the SQL repository layer for an in-memory fake so the
submission pipeline can be exercised without Postgres. The fake keeps the
same constraints as the migration (unique title, case-insensitive unique
entity names, unique link pairs) and restores its state when a transaction
block raises.
"""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager

import asyncpg
import pytest

from core import db
from documents import repository


class FakeStore:
    def __init__(self) -> None:
        self.documents: dict[int, dict] = {}
        self.entities: dict[str, dict[int, str]] = {kind.name: {} for kind in repository.ENTITY_KINDS}
        self.links: dict[str, set[tuple[int, int]]] = {kind.name: set() for kind in repository.ENTITY_KINDS}
        self.next_id = 1
        self.transactions = 0
        self.rollbacks = 0
        # Hooks used by tests to inject failures and races.
        self.fail_link_kind: str | None = None
        self.link_delay_s = 0.0
        self.concurrent_names: set[tuple[str, str]] = set()
        self.title_race = False
        self.commit_delay_s = 0.0
        self.created: list[tuple[str, str]] = []

    def _state(self) -> tuple:
        return (self.documents, self.entities, self.links, self.next_id)

    def _allocate_id(self) -> int:
        value = self.next_id
        self.next_id += 1
        return value

    @asynccontextmanager
    async def transaction(self, acquire_timeout=None):
        self.transactions += 1
        saved = copy.deepcopy(self._state())
        try:
            yield self
        except BaseException:
            self.rollbacks += 1
            self.documents, self.entities, self.links, self.next_id = saved
            raise
        # COMMIT
        if self.commit_delay_s:
            await asyncio.sleep(self.commit_delay_s)

    def add_entity(self, kind: repository.EntityKind, name: str) -> int:
        entity_id = self._allocate_id()
        self.entities[kind.name][entity_id] = name
        return entity_id

    def add_document(self, title: str, file_ref: str = "existing.pdf") -> int:
        document_id = self._allocate_id()
        self.documents[document_id] = {"title": title, "abstract": "", "file_ref": file_ref}
        return document_id

    def names(self, kind: repository.EntityKind) -> list[str]:
        return list(self.entities[kind.name].values())

    def linked_names(self, kind: repository.EntityKind, document_id: int) -> list[str]:
        return [
            self.entities[kind.name][entity_id]
            for (doc_id, entity_id) in sorted(self.links[kind.name])
            if doc_id == document_id
        ]

    async def find_document_id_by_title(self, conn, title: str) -> int | None:
        for document_id, row in self.documents.items():
            if row["title"] == title:
                return document_id
        return None

    async def insert_document(self, conn, *, title: str, abstract: str, file_ref: str) -> int:
        if self.title_race or await self.find_document_id_by_title(conn, title) is not None:
            raise asyncpg.UniqueViolationError('duplicate key value violates unique constraint "documents_title_key"')
        document_id = self._allocate_id()
        self.documents[document_id] = {"title": title, "abstract": abstract, "file_ref": file_ref}
        return document_id

    async def find_entity_id(self, conn, kind: repository.EntityKind, name: str) -> int | None:
        for entity_id, existing in self.entities[kind.name].items():
            if existing.lower() == name.lower():
                return entity_id
        return None

    async def insert_entity(self, conn, kind: repository.EntityKind, name: str) -> int | None:
        if (kind.name, name.lower()) in self.concurrent_names:
            # Another submission committed this name between our lookup and insert.
            self.concurrent_names.discard((kind.name, name.lower()))
            self.add_entity(kind, name)
            return None
        if await self.find_entity_id(conn, kind, name) is not None:
            return None
        self.created.append((kind.name, name))
        return self.add_entity(kind, name)

    async def link_entities(self, conn, kind: repository.EntityKind, document_id: int, entity_ids: list[int]) -> None:
        if self.link_delay_s:
            await asyncio.sleep(self.link_delay_s)
        if self.fail_link_kind == kind.name:
            raise ConnectionError("connection lost while linking")
        assert document_id in self.documents
        for entity_id in entity_ids:
            assert entity_id in self.entities[kind.name]
            self.links[kind.name].add((document_id, entity_id))

    async def get_document(self, document_id: int) -> dict | None:
        row = self.documents.get(document_id)
        if row is None:
            return None
        return {"id": document_id, "publish_date": "2026-01-01T00:00:00+00:00", **row}

    async def list_linked_names(self, document_id: int, kind: repository.EntityKind) -> list[str]:
        return self.linked_names(kind, document_id)


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    monkeypatch.setattr(db, "transaction", fake.transaction)
    for name in (
        "find_document_id_by_title",
        "insert_document",
        "find_entity_id",
        "insert_entity",
        "link_entities",
        "get_document",
        "list_linked_names",
    ):
        monkeypatch.setattr(repository, name, getattr(fake, name))
    return fake


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    monkeypatch.setenv("UPLOAD_DIR", str(directory))
    return directory
