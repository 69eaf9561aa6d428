"""Artifact record and request/response schemas."""
from datetime import datetime
from typing import Any, Optional

from image_service.schemas.base import CamelModel
from image_service.schemas.operation import Operation


class ArtifactRecord(CamelModel):
    """One uploaded image. The catalog's unit of truth.

    ``created_at`` is set once at upload and drives retention; reprocessing
    never resets it.
    """
    id: str
    original_name: str
    byte_size: int
    content_type: str
    raw_location: str
    processed_location: Optional[str] = None
    created_at: datetime
    applied_operations: Optional[list[Operation]] = None


class ProcessRequest(CamelModel):
    file_id: str
    # Parsed with parse_operations() so unknown types are skipped, not rejected
    operations: list[Any]


class ProcessResult(CamelModel):
    file_id: str
    processed_location: str
    byte_size: int
    format: str


class UploadResponse(CamelModel):
    file_id: str
    original_name: str
    size: int
    content_type: str
    preview_url: str


class ProcessResponse(CamelModel):
    file_id: str
    download_url: str
    processed_size: int
    format: str
