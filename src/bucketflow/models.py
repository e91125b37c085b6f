"""
Data models for bucketflow
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Bucket:
    """Represents a bucket returned by ListBuckets."""
    name: str
    creation_date: datetime


@dataclass(frozen=True)
class ObjectRecord:
    """One entry of a listing page; folders are delimiter-terminated placeholders."""
    key: str
    size: int
    last_modified: datetime
    etag: Optional[str] = None
    is_folder: bool = False


@dataclass(frozen=True)
class ObjectVersion:
    """One version (or delete marker) of a key."""
    key: str
    version_id: str
    is_latest: bool
    last_modified: datetime
    size: int = 0
    is_delete_marker: bool = False


@dataclass
class ListPage:
    """Represents a single page of a delimiter-aware listing."""
    records: List[ObjectRecord] = field(default_factory=list)
    is_truncated: bool = False
    continuation_token: Optional[str] = None


@dataclass
class VersionPage:
    """Represents a single page of a versions listing."""
    versions: List[ObjectVersion] = field(default_factory=list)
    is_truncated: bool = False
    next_key_marker: Optional[str] = None
    next_version_id_marker: Optional[str] = None


@dataclass(frozen=True)
class ActiveUpload:
    """An open multipart session reported by ListMultipartUploads."""
    key: str
    upload_id: str
    initiated: datetime


@dataclass(frozen=True)
class PartInfo:
    """A committed part of a multipart session."""
    etag: str
    size: int


@dataclass
class MultipartUploadSession:
    """
    Client-side view of a multipart session.

    ``part_size`` is fixed for the lifetime of the session; ``parts`` maps
    part number to ETag and only grows.
    """
    key: str
    upload_id: str
    part_size: int
    parts: Dict[int, str] = field(default_factory=dict)

    def part_count(self, total_size: int) -> int:
        if total_size <= 0:
            return 1
        return (total_size + self.part_size - 1) // self.part_size

    def missing_parts(self, total_size: int) -> List[int]:
        return [n for n in range(1, self.part_count(total_size) + 1) if n not in self.parts]


@dataclass(frozen=True)
class ObjectMetadata:
    """Represents object metadata returned by HEAD/GET."""
    key: str
    size: int = 0
    etag: Optional[str] = None
    content_type: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


class RetentionMode(str, Enum):
    GOVERNANCE = "GOVERNANCE"
    COMPLIANCE = "COMPLIANCE"


@dataclass(frozen=True)
class ObjectRetention:
    """Object-lock retention of one object version."""
    mode: RetentionMode
    retain_until: datetime


@dataclass(frozen=True)
class LifecycleTransition:
    storage_class: str
    days: Optional[int] = None


@dataclass
class LifecycleRule:
    """
    One rule of a bucket lifecycle configuration.

    Day counts left as ``None`` are omitted from the configuration.
    """
    id: str = ""
    prefix: str = ""
    enabled: bool = True
    expiration_days: Optional[int] = None
    transitions: List[LifecycleTransition] = field(default_factory=list)
    abort_incomplete_upload_days: Optional[int] = None


@dataclass(frozen=True)
class GetObjectResult:
    """Body and lower-cased headers of a GET."""
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PutObjectResult:
    """Represents the result of a put object operation."""
    bucket_name: str
    object_name: str
    etag: Optional[str] = None
    version_id: Optional[str] = None


@dataclass(frozen=True)
class PresignedUrlResult:
    """Represents a presigned URL response."""
    url: str
    expires_at: datetime


@dataclass(frozen=True)
class SignedRequest:
    """Everything that went into one signature. Built per request, never reused."""
    method: str
    canonical_uri: str
    canonical_querystring: str
    signed_headers: str
    payload_hash: str
    signature: str
    headers: Dict[str, str] = field(default_factory=dict)


class TransferType(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE = "delete"
    RENAME = "rename"


class TransferStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.FAILED, TransferStatus.CANCELLED)


@dataclass(frozen=True)
class TransferTask:
    """
    Snapshot of a tracked unit of work.

    ``total_units``/``completed_units`` count files for tree operations and
    bytes for a single large file transfer.
    """
    type: TransferType
    name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    progress: float = 0.0
    status: TransferStatus = TransferStatus.PENDING
    total_units: int = 0
    completed_units: int = 0
    error_message: Optional[str] = None
