"""Document storage adapter for onboarding uploads.

Only descriptors are kept on the session; file bytes live in object storage.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol
from uuid import UUID, uuid4

from ...core.services.storage import StorageService
from ..models.session import DocumentDescriptor, OcrExtraction
from .errors import ValidationFailed

ALLOWED_CONTENT_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/heic",
    "application/pdf",
})
MAX_DOCUMENT_BYTES = 10 * 1024 * 1024

DOCUMENT_TYPES = frozenset({
    "drivers_license",
    "state_id",
    "passport",
    "passport_card",
    "permanent_resident_card",
    "employment_authorization",
    "social_security_card",
    "birth_certificate",
    "other",
})


class DocumentStorage(Protocol):
    async def store_document(
        self,
        session_id: UUID,
        content: bytes,
        filename: str,
        content_type: str,
        document_type: str,
        ocr: Optional[OcrExtraction] = None,
    ) -> DocumentDescriptor:
        ...

    async def discard(self, descriptor: DocumentDescriptor) -> None:
        ...


def check_upload(content: bytes, filename: str, content_type: str, document_type: str) -> None:
    errors: dict[str, str] = {}
    if document_type not in DOCUMENT_TYPES:
        errors["document_type"] = "Unsupported document type"
    if content_type not in ALLOWED_CONTENT_TYPES:
        errors["file"] = "Upload a JPEG, PNG, HEIC or PDF file"
    elif not content:
        errors["file"] = "File is empty"
    elif len(content) > MAX_DOCUMENT_BYTES:
        errors["file"] = "File is larger than 10 MB"
    if not filename:
        errors["filename"] = "Filename is required"
    if errors:
        raise ValidationFailed(errors)


class ObjectStorageDocuments:
    """Stores onboarding documents through StorageService (S3 or local uploads)."""

    def __init__(self, storage: StorageService):
        self.storage = storage

    async def store_document(
        self,
        session_id: UUID,
        content: bytes,
        filename: str,
        content_type: str,
        document_type: str,
        ocr: Optional[OcrExtraction] = None,
    ) -> DocumentDescriptor:
        check_upload(content, filename, content_type, document_type)
        path = await self.storage.upload_file(
            content,
            filename,
            prefix=f"onboarding/{session_id}",
            content_type=content_type,
        )
        return DocumentDescriptor(
            id=uuid4(),
            document_type=document_type,
            filename=filename,
            storage_path=path,
            content_type=content_type,
            uploaded_at=datetime.now(timezone.utc),
            ocr=ocr,
        )

    async def discard(self, descriptor: DocumentDescriptor) -> None:
        await self.storage.delete_file(descriptor.storage_path)

    def download_url(self, descriptor: DocumentDescriptor, expires_in: int = 900) -> str:
        """Presigned link for S3 objects; local uploads are served by path."""
        return self.storage.get_presigned_url(descriptor.storage_path, expires_in) or descriptor.storage_path
