"""
S3Client - signed request layer for S3-compatible object stores
"""

import base64
import hashlib
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from ._decoders import (
    AclDecoder,
    ActiveUploadsDecoder,
    BucketsDecoder,
    LifecycleDecoder,
    ListingDecoder,
    MultipartInitDecoder,
    ObjectLockDecoder,
    PartsDecoder,
    RetentionDecoder,
    StatusDecoder,
    VersionsDecoder,
    parse_error_document,
)
from ._http import HttpClient
from ._signer import AwsSignatureV4Signer, aws_encode
from .error import (
    AccessDeniedException,
    AuthenticationException,
    BucketNotFoundException,
    ObjectNotFoundException,
    ServerException,
)
from .models import (
    ActiveUpload,
    Bucket,
    GetObjectResult,
    LifecycleRule,
    ListPage,
    ObjectMetadata,
    ObjectRetention,
    ObjectVersion,
    PartInfo,
    PresignedUrlResult,
    PutObjectResult,
    RetentionMode,
    VersionPage,
)

S3_XMLNS = "http://s3.amazonaws.com/doc/2006-03-01/"


class S3Client:
    """
    Signed client for one bucket of an S3-compatible service.

    Example:
        client = S3Client(
            endpoint="https://minio.local:9000",
            access_key="admin",
            secret_key="password",
            bucket="photos",
            path_style=True,
        )

        page = await client.list_objects("archive/")
        await client.put_object("archive/readme.txt", b"hello")
    """

    def __init__(
        self,
        endpoint: str = "",
        access_key: str = "",
        secret_key: str = "",
        bucket: str = "",
        region: str = "us-east-1",
        path_style: bool = False,
        use_ssl: bool = True,
        request_timeout: int = 30,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        service: str = "s3",
    ):
        """
        Initialize S3Client.

        Args:
            endpoint: Service address, with or without scheme (empty means AWS)
            access_key: Access key for request signing
            secret_key: Secret key for request signing
            bucket: Bucket every object operation addresses
            region: Signing region
            path_style: Address the bucket as ``host/bucket/key`` instead of ``bucket.host/key``
            use_ssl: Use HTTPS when the endpoint carries no scheme
            request_timeout: Request timeout in seconds
            max_retries: Connection attempts per request
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
            service: Signing service name
        """
        self.endpoint = endpoint
        self.access_key = access_key
        self.bucket = bucket
        self.region = region
        self.path_style = path_style
        self.use_ssl = use_ssl
        self.scheme, self.base_host = self._split_endpoint(endpoint)

        self._http = HttpClient(timeout=request_timeout, max_retries=max_retries, transport=transport)
        self._signer = AwsSignatureV4Signer(access_key, secret_key, region=region, service=service)
        self._logger = logging.getLogger(__name__)

    def _split_endpoint(self, endpoint: str) -> Tuple[str, str]:
        """Normalize the endpoint into ``(scheme, host[:port])``."""
        endpoint = endpoint.strip().rstrip("/")
        if not endpoint:
            return "https", ""
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            parsed = urlsplit(endpoint)
            scheme, host = parsed.scheme, parsed.netloc
        else:
            scheme, host = ("https" if self.use_ssl else "http"), endpoint
        # the Host header omits default ports, so the signed host must too
        default_port = ":443" if scheme == "https" else ":80"
        if host.endswith(default_port):
            host = host[:-len(default_port)]
        return scheme, host

    def _address(self, key: str = "", bucket: Optional[str] = None) -> Tuple[str, str]:
        """Return ``(host, raw path)`` for a key; the path is encoded at signing time."""
        bucket = self.bucket if bucket is None else bucket
        if not bucket:
            return self.base_host or f"s3.{self.region}.amazonaws.com", "/"
        if not self.base_host:
            return f"{bucket}.s3.{self.region}.amazonaws.com", f"/{key}"
        if self.path_style:
            return self.base_host, f"/{bucket}/{key}"
        return f"{bucket}.{self.base_host}", f"/{key}"

    async def _request(
        self,
        method: str,
        action: str,
        key: str = "",
        query: Optional[Mapping[str, Optional[str]]] = None,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
        bucket: Optional[str] = None,
    ) -> httpx.Response:
        """Sign and send one request; non-2xx statuses raise."""
        host, path = self._address(key, bucket)
        headers = dict(headers or {})
        signed = self._signer.sign_request(
            method=method,
            host=host,
            path=path,
            query_params=query,
            headers=headers,
            body=content,
        )
        headers.update(signed.headers)

        url = f"{self.scheme}://{host}{signed.canonical_uri}"
        if signed.canonical_querystring:
            url += f"?{signed.canonical_querystring}"

        response = await self._http.request(method, url, headers=headers, content=content)
        self._logger.debug("[S3] %s %s -> %s", method, url, response.status_code)

        if not 200 <= response.status_code < 300:
            raise self._error_for(response, action, key)
        return response

    def _error_for(self, response: httpx.Response, action: str, key: str) -> ServerException:
        status = response.status_code
        body = response.text if response.content else ""
        code, message = parse_error_document(response.content)

        if status == 401:
            return AuthenticationException(f"{action} failed: {message or 'unauthorized'}", body=body)
        if status == 403:
            return AccessDeniedException(f"{action} failed: {message or 'access denied'}", body=body)
        if status == 404 and code == "NoSuchBucket":
            return BucketNotFoundException(self.bucket, body=body)
        if status == 404 and key:
            return ObjectNotFoundException(self.bucket, key, body=body)

        detail = message or code or body.strip() or "no body"
        return ServerException(f"{action} failed with status {status}: {detail}", status, code, body)

    def _raise_for_embedded_error(self, response: httpx.Response, action: str) -> None:
        """Copy and CompleteMultipartUpload may report failure inside a 200 body."""
        code, message = parse_error_document(response.content)
        if code:
            raise ServerException(
                f"{action} failed: {message or code}", response.status_code, code, response.text
            )

    @staticmethod
    def _lower_headers(response: httpx.Response) -> Dict[str, str]:
        return {k.lower(): v for k, v in response.headers.items()}

    @staticmethod
    def _xml_headers(payload: bytes) -> Dict[str, str]:
        return {
            "Content-Type": "application/xml",
            "Content-MD5": base64.b64encode(hashlib.md5(payload).digest()).decode(),
        }

    # Bucket operations

    async def list_buckets(self) -> List[Bucket]:
        """List all buckets visible to the credentials."""
        response = await self._request("GET", "ListBuckets", bucket="")
        return BucketsDecoder().decode(response.content)

    async def create_bucket(self, object_lock_enabled: bool = False, acl: Optional[str] = None) -> None:
        """Create the configured bucket."""
        headers = {}
        if object_lock_enabled:
            headers["x-amz-bucket-object-lock-enabled"] = "true"
        if acl:
            headers["x-amz-acl"] = acl

        payload = b""
        if self.region != "us-east-1" and (not self.base_host or "amazonaws.com" in self.base_host):
            root = ET.Element("CreateBucketConfiguration", xmlns=S3_XMLNS)
            ET.SubElement(root, "LocationConstraint").text = self.region
            payload = ET.tostring(root, encoding="utf-8", method="xml")

        await self._request("PUT", "CreateBucket", headers=headers, content=payload)

    async def delete_bucket(self) -> None:
        """Remove the configured bucket (must be empty)."""
        await self._request("DELETE", "DeleteBucket")

    async def get_bucket_versioning(self) -> bool:
        response = await self._request("GET", "GetBucketVersioning", query={"versioning": ""})
        return StatusDecoder().decode(response.content) == "Enabled"

    async def put_bucket_versioning(self, enabled: bool) -> None:
        root = ET.Element("VersioningConfiguration", xmlns=S3_XMLNS)
        ET.SubElement(root, "Status").text = "Enabled" if enabled else "Suspended"
        payload = ET.tostring(root, encoding="utf-8", method="xml")
        await self._request(
            "PUT",
            "PutBucketVersioning",
            query={"versioning": ""},
            headers=self._xml_headers(payload),
            content=payload,
        )

    async def get_bucket_object_lock(self) -> bool:
        """Whether object lock is enabled; a missing configuration reads as disabled."""
        try:
            response = await self._request("GET", "GetObjectLockConfiguration", query={"object-lock": ""})
        except ServerException as ex:
            if ex.status_code in (403, 404):
                return False
            raise
        return ObjectLockDecoder().decode(response.content) == "Enabled"

    async def get_bucket_lifecycle(self) -> List[LifecycleRule]:
        """Lifecycle rules of the bucket; a bucket without a configuration has none."""
        try:
            response = await self._request("GET", "GetBucketLifecycle", query={"lifecycle": ""})
        except BucketNotFoundException:
            raise
        except ServerException as ex:
            if ex.status_code == 404:
                return []
            raise
        return LifecycleDecoder().decode(response.content)

    async def put_bucket_lifecycle(self, rules: List[LifecycleRule]) -> None:
        """Replace the lifecycle configuration; an empty rule list removes it."""
        if not rules:
            await self._request("DELETE", "DeleteBucketLifecycle", query={"lifecycle": ""})
            return

        root = ET.Element("LifecycleConfiguration", xmlns=S3_XMLNS)
        for rule in rules:
            rule_el = ET.SubElement(root, "Rule")
            if rule.id:
                ET.SubElement(rule_el, "ID").text = rule.id
            ET.SubElement(ET.SubElement(rule_el, "Filter"), "Prefix").text = rule.prefix
            ET.SubElement(rule_el, "Status").text = "Enabled" if rule.enabled else "Disabled"
            if rule.expiration_days is not None:
                ET.SubElement(ET.SubElement(rule_el, "Expiration"), "Days").text = str(rule.expiration_days)
            for transition in rule.transitions:
                transition_el = ET.SubElement(rule_el, "Transition")
                if transition.days is not None:
                    ET.SubElement(transition_el, "Days").text = str(transition.days)
                ET.SubElement(transition_el, "StorageClass").text = transition.storage_class
            if rule.abort_incomplete_upload_days is not None:
                abort_el = ET.SubElement(rule_el, "AbortIncompleteMultipartUpload")
                ET.SubElement(abort_el, "DaysAfterInitiation").text = str(rule.abort_incomplete_upload_days)
        payload = ET.tostring(root, encoding="utf-8", method="xml")

        await self._request(
            "PUT",
            "PutBucketLifecycle",
            query={"lifecycle": ""},
            headers=self._xml_headers(payload),
            content=payload,
        )

    # Listing

    async def list_objects(
        self,
        prefix: str = "",
        continuation_token: Optional[str] = None,
        delimiter: Optional[str] = "/",
        exclude_self: bool = True,
        max_keys: Optional[int] = None,
    ) -> ListPage:
        """Fetch one ListObjectsV2 page."""
        query: Dict[str, str] = {"list-type": "2", "prefix": prefix}
        if delimiter:
            query["delimiter"] = delimiter
        if continuation_token:
            query["continuation-token"] = continuation_token
        if max_keys:
            query["max-keys"] = str(max_keys)

        response = await self._request("GET", "ListObjects", query=query)
        return ListingDecoder(prefix=prefix, exclude_self=exclude_self).decode(response.content)

    async def list_versions(
        self,
        prefix: str = "",
        key_marker: Optional[str] = None,
        version_id_marker: Optional[str] = None,
    ) -> VersionPage:
        """Fetch one ListObjectVersions page."""
        query: Dict[str, str] = {"versions": "", "prefix": prefix}
        if key_marker:
            query["key-marker"] = key_marker
        if version_id_marker:
            query["version-id-marker"] = version_id_marker
        response = await self._request("GET", "ListVersions", query=query)
        return VersionsDecoder().decode(response.content)

    async def list_all_versions(self, prefix: str = "") -> List[ObjectVersion]:
        versions: List[ObjectVersion] = []
        key_marker = version_id_marker = None
        while True:
            page = await self.list_versions(prefix, key_marker, version_id_marker)
            versions.extend(page.versions)
            if not page.is_truncated or not page.next_key_marker:
                return versions
            key_marker, version_id_marker = page.next_key_marker, page.next_version_id_marker

    async def list_object_versions(self, key: str) -> List[ObjectVersion]:
        """Versions of exactly ``key``; the service answers for the whole prefix."""
        return [v for v in await self.list_all_versions(prefix=key) if v.key == key]

    # Object operations

    async def put_object(
        self,
        key: str,
        data: bytes = b"",
        metadata: Optional[Dict[str, str]] = None,
        content_type: Optional[str] = None,
        acl: Optional[str] = None,
    ) -> PutObjectResult:
        """Upload an object in a single request."""
        headers = {}
        for name, value in (metadata or {}).items():
            headers[f"x-amz-meta-{name}"] = value
        if content_type:
            headers["Content-Type"] = content_type
        if acl:
            headers["x-amz-acl"] = acl

        response = await self._request("PUT", "PutObject", key=key, headers=headers, content=data or b"")
        return PutObjectResult(
            bucket_name=self.bucket,
            object_name=key,
            etag=response.headers.get("ETag", "").strip('"') or None,
            version_id=response.headers.get("x-amz-version-id"),
        )

    async def create_folder(self, key: str) -> PutObjectResult:
        """Create the zero-byte placeholder object for a folder."""
        return await self.put_object(key if key.endswith("/") else key + "/", b"")

    async def get_object(self, key: str, version_id: Optional[str] = None) -> GetObjectResult:
        query = {"versionId": version_id} if version_id else None
        response = await self._request("GET", "GetObject", key=key, query=query)
        return GetObjectResult(content=response.content, headers=self._lower_headers(response))

    async def get_object_range(
        self, key: str, start: int, end: int, version_id: Optional[str] = None
    ) -> GetObjectResult:
        """Fetch the inclusive byte range ``start..end``."""
        query = {"versionId": version_id} if version_id else None
        response = await self._request(
            "GET", "GetObjectRange", key=key, query=query, headers={"Range": f"bytes={start}-{end}"}
        )
        return GetObjectResult(content=response.content, headers=self._lower_headers(response))

    async def head_object(self, key: str, version_id: Optional[str] = None) -> ObjectMetadata:
        """Get object metadata without downloading."""
        query = {"versionId": version_id} if version_id else None
        response = await self._request("HEAD", "HeadObject", key=key, query=query)
        headers = self._lower_headers(response)
        return ObjectMetadata(
            key=key,
            size=int(headers.get("content-length", 0) or 0),
            etag=headers.get("etag", "").strip('"') or None,
            content_type=headers.get("content-type"),
            headers=headers,
        )

    async def delete_object(self, key: str, version_id: Optional[str] = None) -> None:
        query = {"versionId": version_id} if version_id else None
        await self._request("DELETE", "DeleteObject", key=key, query=query)

    async def copy_object(self, source_key: str, destination_key: str) -> None:
        """Server-side copy within the bucket."""
        source = source_key[1:] if source_key.startswith("/") else source_key
        headers = {"x-amz-copy-source": f"/{self.bucket}/{aws_encode(source)}"}
        self._logger.debug("[S3] Copying %s to %s", source_key, destination_key)
        response = await self._request("PUT", "CopyObject", key=destination_key, headers=headers, content=b"")
        self._raise_for_embedded_error(response, "CopyObject")

    async def get_object_acl(self, key: str) -> bool:
        """Whether the object is publicly readable."""
        response = await self._request("GET", "GetObjectAcl", key=key, query={"acl": ""})
        return AclDecoder().decode(response.content)

    async def set_object_acl(self, key: str, is_public: bool) -> None:
        await self._request(
            "PUT",
            "PutObjectAcl",
            key=key,
            query={"acl": ""},
            headers={"x-amz-acl": "public-read" if is_public else "private"},
            content=b"",
        )

    async def get_object_legal_hold(self, key: str, version_id: Optional[str] = None) -> bool:
        query = {"legal-hold": ""}
        if version_id:
            query["versionId"] = version_id
        try:
            response = await self._request("GET", "GetObjectLegalHold", key=key, query=query)
        except ServerException as ex:
            if ex.status_code == 404:
                return False
            raise
        return StatusDecoder().decode(response.content) == "ON"

    async def put_object_legal_hold(self, key: str, enabled: bool, version_id: Optional[str] = None) -> None:
        query = {"legal-hold": ""}
        if version_id:
            query["versionId"] = version_id
        root = ET.Element("LegalHold", xmlns=S3_XMLNS)
        ET.SubElement(root, "Status").text = "ON" if enabled else "OFF"
        payload = ET.tostring(root, encoding="utf-8", method="xml")
        await self._request(
            "PUT", "PutObjectLegalHold", key=key, query=query, headers=self._xml_headers(payload), content=payload
        )

    async def get_object_retention(
        self, key: str, version_id: Optional[str] = None
    ) -> Optional[ObjectRetention]:
        """Retention of an object version, or ``None`` when none is set."""
        query = {"retention": ""}
        if version_id:
            query["versionId"] = version_id
        try:
            response = await self._request("GET", "GetObjectRetention", key=key, query=query)
        except ServerException as ex:
            if ex.status_code == 404:
                return None
            raise
        return RetentionDecoder().decode(response.content)

    async def put_object_retention(
        self,
        key: str,
        mode: RetentionMode,
        retain_until: datetime,
        version_id: Optional[str] = None,
    ) -> None:
        query = {"retention": ""}
        if version_id:
            query["versionId"] = version_id
        if retain_until.tzinfo is None:
            retain_until = retain_until.replace(tzinfo=UTC)
        until = retain_until.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

        root = ET.Element("Retention", xmlns=S3_XMLNS)
        ET.SubElement(root, "Mode").text = RetentionMode(mode).value
        ET.SubElement(root, "RetainUntilDate").text = until
        payload = ET.tostring(root, encoding="utf-8", method="xml")
        await self._request(
            "PUT", "PutObjectRetention", key=key, query=query, headers=self._xml_headers(payload), content=payload
        )

    # Multipart

    async def initiate_multipart_upload(
        self,
        key: str,
        metadata: Optional[Dict[str, str]] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Initiate multipart upload and return the upload id."""
        headers = {f"x-amz-meta-{name}": value for name, value in (metadata or {}).items()}
        if content_type:
            headers["Content-Type"] = content_type
        response = await self._request(
            "POST", "CreateMultipartUpload", key=key, query={"uploads": ""}, headers=headers, content=b""
        )
        upload_id = MultipartInitDecoder().decode(response.content)
        if not upload_id:
            raise ServerException(
                "Multipart upload initiation did not return an upload ID.", response.status_code
            )
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """Upload one part and return its ETag."""
        response = await self._request(
            "PUT",
            "UploadPart",
            key=key,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            content=data,
        )
        etag = response.headers.get("ETag", "").strip('"')
        if not etag:
            raise ServerException(f"UploadPart {part_number} returned no ETag.", response.status_code)
        return etag

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: Mapping[int, str]) -> Optional[str]:
        """Finalize the session from the complete part map; returns the object ETag."""
        root = ET.Element("CompleteMultipartUpload", xmlns=S3_XMLNS)
        for number in sorted(parts):
            part_el = ET.SubElement(root, "Part")
            ET.SubElement(part_el, "PartNumber").text = str(number)
            ET.SubElement(part_el, "ETag").text = f'"{parts[number]}"'
        payload = ET.tostring(root, encoding="utf-8", method="xml")

        response = await self._request(
            "POST",
            "CompleteMultipartUpload",
            key=key,
            query={"uploadId": upload_id},
            headers={"Content-Type": "application/xml"},
            content=payload,
        )
        self._raise_for_embedded_error(response, "CompleteMultipartUpload")
        return response.headers.get("ETag", "").strip('"') or None

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        await self._request("DELETE", "AbortMultipartUpload", key=key, query={"uploadId": upload_id})

    async def list_multipart_uploads(self, prefix: str = "") -> List[ActiveUpload]:
        """List open multipart sessions, optionally narrowed to a key prefix."""
        uploads: List[ActiveUpload] = []
        query: Dict[str, str] = {"uploads": ""}
        if prefix:
            query["prefix"] = prefix
        while True:
            response = await self._request("GET", "ListMultipartUploads", query=query)
            decoder = ActiveUploadsDecoder()
            uploads.extend(decoder.decode(response.content))
            key_marker = decoder.top_level_value("NextKeyMarker")
            if not decoder.is_truncated or not key_marker:
                return uploads
            query["key-marker"] = key_marker
            query["upload-id-marker"] = decoder.top_level_value("NextUploadIdMarker") or ""

    async def list_parts(self, key: str, upload_id: str) -> Dict[int, PartInfo]:
        """Committed parts of a session as ``{part_number: PartInfo}``."""
        parts: Dict[int, PartInfo] = {}
        query: Dict[str, str] = {"uploadId": upload_id}
        while True:
            response = await self._request("GET", "ListParts", key=key, query=query)
            decoder = PartsDecoder()
            parts.update(decoder.decode(response.content))
            marker = decoder.top_level_value("NextPartNumberMarker")
            if not decoder.is_truncated or not marker:
                return parts
            query["part-number-marker"] = marker

    # Presigned URLs

    async def presigned_get_object(
        self,
        key: str,
        expires_in_seconds: int = 3600,
        version_id: Optional[str] = None,
    ) -> PresignedUrlResult:
        """Generate a presigned GET URL using local AWS SigV4 signing."""
        host, path = self._address(key)
        url = self._signer.generate_presigned_url(
            method="GET",
            host=host,
            path=path,
            query_params={"versionId": version_id} if version_id else None,
            expires_in=expires_in_seconds,
            use_https=self.scheme == "https",
        )
        return PresignedUrlResult(
            url=url,
            expires_at=datetime.now(UTC) + timedelta(seconds=int(expires_in_seconds)),
        )

    async def close(self) -> None:
        """Close the client and cleanup resources."""
        await self._http.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
