# eli_ingest/errors.py
"""
Error taxonomy for ingestion and enrichment.

Only ValidationError and AuthoritativeStoreError are ever visible to HTTP
callers. Everything else is caught at the boundary of a best-effort side
channel and logged.
"""


class IngestionError(Exception):
    """Base class for every error raised by this service."""


class ValidationError(IngestionError):
    """Malformed or missing required fields. Carries field-level issues."""

    def __init__(self, message: str, issues: list[dict] | None = None):
        super().__init__(message)
        self.issues = issues or []


class ImageUploadError(IngestionError):
    """Inline image payload could not be decoded or archived."""


class AuthoritativeStoreError(IngestionError):
    """Relational store failure. Fatal to the request."""


class SecondaryStoreError(IngestionError):
    """Graph store failure. Logged, never propagated."""


class EnqueueError(IngestionError):
    """Job queue unavailable or misconfigured."""


class EnrichmentError(IngestionError):
    """Detection model or generation service failure."""
