"""
FastAPI router for document submission endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, File, Form, HTTPException, UploadFile, status
from starlette.datastructures import UploadFile as StarletteUploadFile

from core import storage

from . import schemas, service
from .errors import ConflictError, DocumentError, ValidationError

router = APIRouter()


def _to_http_error(exc: DocumentError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    # PersistenceError: storage details stay in the logs.
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error processing upload.")


def _require_file(file: UploadFile | str | None) -> UploadFile:
    # A form sent with no file chosen (or a plain "file" field) arrives as a str.
    if not isinstance(file, StarletteUploadFile) or not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No file received.",
        )
    return file


@router.post(
    "/documents",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.DocumentCreatedResponse,
)
@router.post(
    "/create",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.DocumentCreatedResponse,
    include_in_schema=False,
)
async def create_document(
    title: str = Form(default=""),
    authors: str = Form(default=""),
    categories: str = Form(default=""),
    keywords: str = Form(default=""),
    abstract: str = Form(default=""),
    file: UploadFile | str | None = File(default=None),
) -> schemas.DocumentCreatedResponse:
    """
    Submit a document: store the file, then persist the document with its
    authors, categories and keywords in one transaction.
    """
    upload = _require_file(file)
    if not title.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required.")

    stored = await storage.save_upload(upload)
    submission = service.Submission(
        title=title,
        file_ref=stored.file_ref,
        authors=authors,
        categories=categories,
        keywords=keywords,
        abstract=abstract,
    )

    try:
        document_id = await service.create_document(submission)
    except DocumentError as exc:
        # Nothing references the stored file once the submission is rejected.
        storage.discard(stored.file_ref)
        raise _to_http_error(exc) from exc

    return schemas.DocumentCreatedResponse(
        document_id=document_id,
        title=title.strip(),
        file_ref=stored.file_ref,
    )


@router.post(
    "/upload",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.FileStoredResponse,
)
async def upload_file(file: UploadFile | str | None = File(default=None)) -> schemas.FileStoredResponse:
    """
    Store a file without creating a document.
    """
    stored = await storage.save_upload(_require_file(file))
    return schemas.FileStoredResponse(file_ref=stored.file_ref, size_bytes=stored.size_bytes)


@router.get("/documents/{document_id}", response_model=schemas.DocumentResponse)
async def get_document(document_id: int) -> schemas.DocumentResponse:
    document = await service.get_document(document_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found.")
    return schemas.DocumentResponse(**document)
