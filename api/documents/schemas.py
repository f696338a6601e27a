"""
Document API schemas (response models).
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class DocumentCreatedResponse(BaseModel):
    document_id: int
    title: str
    file_ref: str
    message: str = "Document uploaded successfully"


class FileStoredResponse(BaseModel):
    file_ref: str
    size_bytes: int
    status: str = "Success"


class DocumentResponse(BaseModel):
    id: int
    title: str
    publish_date: datetime
    abstract: str = ""
    file_ref: str
    authors: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
