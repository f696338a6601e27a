"""
Failure outcomes of a document submission.

The router maps these to HTTP statuses: validation 400, conflict 409,
persistence 500.
"""

from __future__ import annotations


class DocumentError(RuntimeError):
    pass


class ValidationError(DocumentError):
    """A required field or the file is missing. Nothing was written."""


class ConflictError(DocumentError):
    """A document with the same title already exists. Nothing was written."""


class PersistenceError(DocumentError):
    """The store failed after writes began. The submission was rolled back."""
