"""
Exception classes for bucketflow
"""


class BucketFlowException(Exception):
    """
    Base exception for all bucketflow errors.
    """

    def __init__(self, message: str, status_code: int = None, error_code: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class TransportException(BucketFlowException):
    """Thrown when the HTTP transport could not complete a request."""

    def __init__(self, message: str):
        super().__init__(message, error_code="TransportError")


class ServerException(BucketFlowException):
    """Thrown when the server returns a non-2xx status."""

    def __init__(self, message: str, status_code: int, error_code: str = None, body: str = ""):
        super().__init__(message, status_code, error_code)
        self.body = body


class AuthenticationException(ServerException):
    """Thrown when authentication fails."""

    def __init__(self, message: str, body: str = ""):
        super().__init__(message, status_code=401, error_code="InvalidCredentials", body=body)


class AccessDeniedException(ServerException):
    """Thrown when access is denied."""

    def __init__(self, message: str, body: str = ""):
        super().__init__(message, status_code=403, error_code="AccessDenied", body=body)


class BucketNotFoundException(ServerException):
    """Thrown when a bucket is not found."""

    def __init__(self, bucket_name: str, body: str = ""):
        super().__init__(
            f"Bucket '{bucket_name}' not found.",
            status_code=404,
            error_code="NoSuchBucket",
            body=body,
        )


class ObjectNotFoundException(ServerException):
    """Thrown when an object is not found."""

    def __init__(self, bucket_name: str, object_name: str, body: str = ""):
        super().__init__(
            f"Object '{object_name}' not found in bucket '{bucket_name}'.",
            status_code=404,
            error_code="NoSuchKey",
            body=body,
        )


class DecodeException(BucketFlowException):
    """Thrown when a response body is not a well-formed XML document."""

    def __init__(self, message: str):
        super().__init__(message, error_code="MalformedXML")


class SigningException(BucketFlowException):
    """Thrown when a request cannot be signed (missing host, relative path)."""

    def __init__(self, message: str):
        super().__init__(message, error_code="InvalidRequest")


class EncryptionKeyNotFoundException(BucketFlowException):
    """Thrown when an encryption key alias cannot be resolved."""

    def __init__(self, alias: str):
        super().__init__(f"Encryption key '{alias}' not found.", error_code="KeyNotFound")
        self.alias = alias


class DecryptionException(BucketFlowException):
    """Thrown when ciphertext fails authentication under the resolved key."""

    def __init__(self, message: str):
        super().__init__(message, error_code="DecryptionFailed")


class PartSizeMismatchException(BucketFlowException):
    """Thrown when a resumable multipart session was created with another part size."""

    def __init__(self, remote_part_size: int, local_part_size: int):
        super().__init__(
            f"Remote part size {remote_part_size} does not match local part size {local_part_size}."
        )
        self.remote_part_size = remote_part_size
        self.local_part_size = local_part_size


class TransferCancelledError(BucketFlowException):
    """Raised at a chunk or file boundary when the owning task was cancelled."""

    def __init__(self, message: str = "Transfer cancelled by user"):
        super().__init__(message)
