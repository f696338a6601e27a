"""
Local file sink for uploaded documents.

Uploads are written under UPLOAD_DIR before any database work starts. The
returned `file_ref` is the stored filename, which is what gets persisted on
the document row.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

from fastapi import HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool

from . import config

DEFAULT_UPLOAD_DIR = "uploads"
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024  # 50 MiB
CHUNK_SIZE = 1024 * 1024  # 1 MiB

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    file_ref: str
    original_filename: str
    content_type: str | None
    size_bytes: int


def upload_dir() -> Path:
    return Path(config.env_str("UPLOAD_DIR", DEFAULT_UPLOAD_DIR))


def max_upload_bytes() -> int:
    value = config.env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)
    return value if value > 0 else DEFAULT_MAX_UPLOAD_BYTES


def safe_filename(filename: str) -> str:
    # Drop any client-side directory part, then squash unsafe characters.
    name = Path(filename.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "upload"


def build_file_ref(filename: str) -> str:
    """
    `<epoch-ms>_<token>_<name>`: the token keeps two uploads of the same file
    in the same millisecond apart.
    """
    return f"{int(time.time() * 1000)}_{secrets.token_hex(4)}_{safe_filename(filename)}"


def resolve(file_ref: str) -> Path:
    return upload_dir() / file_ref


async def save_upload(file: UploadFile) -> StoredFile:
    """
    Stream the upload to disk, enforcing MAX_UPLOAD_BYTES.

    Disk writes run in the threadpool so the event loop is never blocked.
    A partially written file is removed when the upload fails or exceeds
    the size limit.
    """
    directory = upload_dir()
    directory.mkdir(parents=True, exist_ok=True)

    limit = max_upload_bytes()
    file_ref = build_file_ref(file.filename or "")
    target = directory / file_ref

    size = 0
    out = await run_in_threadpool(target.open, "wb")
    try:
        while True:
            chunk = await file.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > limit:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large. Max is {limit} bytes.",
                )
            await run_in_threadpool(out.write, chunk)
    except BaseException:
        await run_in_threadpool(out.close)
        target.unlink(missing_ok=True)
        raise
    await run_in_threadpool(out.close)

    logger.info("upload_stored file_ref=%s size_bytes=%s", file_ref, size)
    return StoredFile(
        file_ref=file_ref,
        original_filename=file.filename or "",
        content_type=file.content_type,
        size_bytes=size,
    )


def discard(file_ref: str) -> None:
    """
    Remove a stored upload. A file that is already gone is not an error.
    """
    if not file_ref:
        return
    try:
        resolve(file_ref).unlink(missing_ok=True)
    except OSError:
        logger.exception("upload_discard_failed file_ref=%s", file_ref)
        return
    logger.info("upload_discarded file_ref=%s", file_ref)
