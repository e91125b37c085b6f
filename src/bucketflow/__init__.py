"""
bucketflow - async client engine for S3-compatible object stores
"""

__version__ = "1.0.0"

from .client import S3Client
from .config import TransferSettings
from .crypto import EncryptionCodec, InMemoryKeyStore, KeyStore
from .listing import ObjectLister
from .transfer import DirectorySink, FileSink, TransferManager
from .models import (
    ActiveUpload,
    Bucket,
    GetObjectResult,
    LifecycleRule,
    LifecycleTransition,
    ListPage,
    MultipartUploadSession,
    ObjectMetadata,
    ObjectRecord,
    ObjectRetention,
    ObjectVersion,
    PartInfo,
    PresignedUrlResult,
    PutObjectResult,
    RetentionMode,
    TransferStatus,
    TransferTask,
    TransferType,
)
from .error import (
    BucketFlowException,
    TransportException,
    ServerException,
    AuthenticationException,
    AccessDeniedException,
    BucketNotFoundException,
    ObjectNotFoundException,
    DecodeException,
    SigningException,
    EncryptionKeyNotFoundException,
    DecryptionException,
    PartSizeMismatchException,
    TransferCancelledError,
)

__all__ = [
    "S3Client",
    "TransferSettings",
    "EncryptionCodec",
    "InMemoryKeyStore",
    "KeyStore",
    "ObjectLister",
    "DirectorySink",
    "FileSink",
    "TransferManager",
    "ActiveUpload",
    "Bucket",
    "GetObjectResult",
    "LifecycleRule",
    "LifecycleTransition",
    "ListPage",
    "MultipartUploadSession",
    "ObjectMetadata",
    "ObjectRecord",
    "ObjectRetention",
    "ObjectVersion",
    "PartInfo",
    "PresignedUrlResult",
    "PutObjectResult",
    "RetentionMode",
    "TransferStatus",
    "TransferTask",
    "TransferType",
    "BucketFlowException",
    "TransportException",
    "ServerException",
    "AuthenticationException",
    "AccessDeniedException",
    "BucketNotFoundException",
    "ObjectNotFoundException",
    "DecodeException",
    "SigningException",
    "EncryptionKeyNotFoundException",
    "DecryptionException",
    "PartSizeMismatchException",
    "TransferCancelledError",
]
