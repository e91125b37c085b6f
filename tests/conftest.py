import hashlib
import itertools
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime, UTC
from urllib.parse import unquote
from xml.sax.saxutils import escape

import httpx
import pytest
import pytest_asyncio

from bucketflow.client import S3Client


BUCKET = "test-bucket"
ENDPOINT = "http://s3.test"
ACCESS_KEY = "AKIATESTKEY000000001"
SECRET_KEY = "testSecretKey0000000000000000000000000000"


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _xml(body: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=body.encode(), headers={"Content-Type": "application/xml"})


def _error(status: int, code: str, message: str = "") -> httpx.Response:
    return _xml(f"<Error><Code>{code}</Code><Message>{escape(message or code)}</Message></Error>", status)


class FakeS3:
    """In-memory single-bucket S3 emulator served through httpx.MockTransport."""

    error = staticmethod(_error)

    def __init__(self, page_size: int = 1000):
        self.page_size = page_size
        self.objects = {}
        self.versions = []
        self.uploads = {}
        self.acls = {}
        self.legal_holds = {}
        self.retentions = {}
        self.lifecycle = None
        self.created_buckets = []
        self.bucket_deleted = False
        self.versioning = None
        self.requests = []
        self.completed = []
        self.aborted = []
        self.fail = None
        self.ignore_range = False
        self._version_ids = itertools.count(1)

    # helpers for tests

    def put(self, key: str, data: bytes, metadata=None, modified=None):
        modified = modified or datetime.now(UTC)
        self.objects[key] = {"data": data, "metadata": dict(metadata or {}), "modified": modified}
        self.versions.append({
            "key": key,
            "version_id": f"v{next(self._version_ids)}",
            "modified": modified,
            "size": len(data),
        })

    def open_upload(self, key: str, parts=None) -> str:
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = {
            "key": key,
            "parts": dict(parts or {}),
            "metadata": {},
            "initiated": datetime.now(UTC),
        }
        return upload_id

    def calls(self, method: str, marker: str = None):
        return [r for r in self.requests if r.method == method and (marker is None or marker in r.url.params)]

    # transport

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=")
        if self.fail is not None:
            response = self.fail(request)
            if response is not None:
                return response

        path = request.url.path
        if path == "/":
            return self._list_buckets()
        _, bucket, key = path.split("/", 2) if path.count("/") >= 2 else (None, path.strip("/"), "")
        if bucket != BUCKET:
            return _error(404, "NoSuchBucket")

        params = request.url.params
        method = request.method
        if method == "GET":
            return self._get(request, key, params)
        if method == "HEAD":
            return self._head(key)
        if method == "PUT":
            return self._put(request, key, params)
        if method == "POST":
            return self._post(request, key, params)
        if method == "DELETE":
            return self._delete(key, params)
        return _error(405, "MethodNotAllowed")

    def _list_buckets(self):
        return _xml(
            "<ListAllMyBucketsResult><Buckets>"
            f"<Bucket><Name>{BUCKET}</Name><CreationDate>2024-01-01T00:00:00.000Z</CreationDate></Bucket>"
            "</Buckets></ListAllMyBucketsResult>"
        )

    def _get(self, request, key, params):
        if params.get("list-type") == "2":
            return self._list_objects(params)
        if "versions" in params:
            return self._list_versions(params)
        if "uploads" in params:
            return self._list_uploads(params)
        if "uploadId" in params:
            return self._list_parts(key, params)
        if "acl" in params:
            grant = ""
            if self.acls.get(key) == "public-read":
                grant = (
                    "<Grant><Grantee><URI>http://acs.amazonaws.com/groups/global/AllUsers</URI></Grantee>"
                    "<Permission>READ</Permission></Grant>"
                )
            return _xml(f"<AccessControlPolicy><AccessControlList>{grant}</AccessControlList></AccessControlPolicy>")
        if "versioning" in params:
            status = f"<Status>{self.versioning}</Status>" if self.versioning else ""
            return _xml(f"<VersioningConfiguration>{status}</VersioningConfiguration>")
        if "object-lock" in params:
            return _error(404, "ObjectLockConfigurationNotFoundError")
        if "legal-hold" in params:
            if key not in self.legal_holds:
                return _error(404, "NoSuchObjectLockConfiguration")
            return _xml(f"<LegalHold><Status>{self.legal_holds[key]}</Status></LegalHold>")
        if "retention" in params:
            if key not in self.retentions:
                return _error(404, "NoSuchObjectLockConfiguration")
            return _xml(self.retentions[key].decode())
        if "lifecycle" in params:
            if self.lifecycle is None:
                return _error(404, "NoSuchLifecycleConfiguration")
            return _xml(self.lifecycle.decode())

        obj = self.objects.get(key)
        if obj is None:
            return _error(404, "NoSuchKey")
        data = obj["data"]
        headers = self._object_headers(key)
        range_header = request.headers.get("Range")
        if range_header and not self.ignore_range:
            start, end = (int(v) for v in range_header.split("=", 1)[1].split("-"))
            end = min(end, len(data) - 1)
            headers["Content-Range"] = f"bytes {start}-{end}/{len(data)}"
            return httpx.Response(206, content=data[start:end + 1], headers=headers)
        return httpx.Response(200, content=data, headers=headers)

    def _head(self, key):
        if key not in self.objects:
            return httpx.Response(404)
        headers = self._object_headers(key)
        headers["Content-Length"] = str(len(self.objects[key]["data"]))
        return httpx.Response(200, headers=headers)

    def _object_headers(self, key):
        obj = self.objects[key]
        headers = {"ETag": f'"{hashlib.md5(obj["data"]).hexdigest()}"'}
        for name, value in obj["metadata"].items():
            headers[f"x-amz-meta-{name}"] = value
        return headers

    def _put(self, request, key, params):
        body = request.content
        if "uploadId" in params:
            upload = self.uploads.get(params["uploadId"])
            if upload is None:
                return _error(404, "NoSuchUpload")
            upload["parts"][int(params["partNumber"])] = body
            return httpx.Response(200, headers={"ETag": f'"{hashlib.md5(body).hexdigest()}"'})
        if "acl" in params:
            self.acls[key] = request.headers.get("x-amz-acl", "private")
            return httpx.Response(200)
        if "versioning" in params:
            root = ET.fromstring(body)
            self.versioning = root.find("{*}Status").text
            return httpx.Response(200)
        if "legal-hold" in params:
            assert "Content-MD5" in request.headers
            root = ET.fromstring(body)
            self.legal_holds[key] = root.find("{*}Status").text
            return httpx.Response(200)
        if "retention" in params:
            assert "Content-MD5" in request.headers
            self.retentions[key] = body
            return httpx.Response(200)
        if "lifecycle" in params:
            assert "Content-MD5" in request.headers
            self.lifecycle = body
            return httpx.Response(200)
        if not key:
            self.created_buckets.append({"headers": request.headers, "body": body})
            return httpx.Response(200)

        source = request.headers.get("x-amz-copy-source")
        if source is not None:
            _, src_bucket, src_key = unquote(source).split("/", 2)
            obj = self.objects.get(src_key)
            if src_bucket != BUCKET or obj is None:
                return _error(404, "NoSuchKey")
            self.put(key, obj["data"], obj["metadata"])
            return _xml("<CopyObjectResult><ETag>&quot;x&quot;</ETag></CopyObjectResult>")

        metadata = {
            name[len("x-amz-meta-"):]: value
            for name, value in request.headers.items()
            if name.lower().startswith("x-amz-meta-")
        }
        self.put(key, body, metadata)
        return httpx.Response(200, headers={
            "ETag": f'"{hashlib.md5(body).hexdigest()}"',
            "x-amz-version-id": self.versions[-1]["version_id"],
        })

    def _post(self, request, key, params):
        if "uploads" in params:
            upload_id = self.open_upload(key)
            self.uploads[upload_id]["metadata"] = {
                name[len("x-amz-meta-"):]: value
                for name, value in request.headers.items()
                if name.lower().startswith("x-amz-meta-")
            }
            return _xml(
                "<InitiateMultipartUploadResult>"
                f"<Bucket>{BUCKET}</Bucket><Key>{escape(key)}</Key><UploadId>{upload_id}</UploadId>"
                "</InitiateMultipartUploadResult>"
            )
        if "uploadId" in params:
            upload = self.uploads.pop(params["uploadId"], None)
            if upload is None:
                return _error(404, "NoSuchUpload")
            root = ET.fromstring(request.content)
            numbers = [int(p.find("{*}PartNumber").text) for p in root.findall("{*}Part")]
            etags = [p.find("{*}ETag").text for p in root.findall("{*}Part")]
            self.completed.append({"key": key, "numbers": numbers, "etags": etags})
            self.put(key, b"".join(upload["parts"][n] for n in numbers), upload["metadata"])
            return _xml(
                f"<CompleteMultipartUploadResult><Key>{escape(key)}</Key><ETag>&quot;done&quot;</ETag>"
                "</CompleteMultipartUploadResult>"
            )
        return _error(400, "InvalidRequest")

    def _delete(self, key, params):
        if "uploadId" in params:
            self.uploads.pop(params["uploadId"], None)
            self.aborted.append(params["uploadId"])
            return httpx.Response(204)
        if "lifecycle" in params:
            self.lifecycle = None
            return httpx.Response(204)
        if not key:
            self.bucket_deleted = True
            return httpx.Response(204)
        self.objects.pop(key, None)
        return httpx.Response(204)

    def _list_objects(self, params):
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter")
        entries = {}
        for key in sorted(self.objects):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if delimiter and delimiter in rest:
                common = prefix + rest[:rest.index(delimiter) + 1]
                entries[common] = ("prefix", common)
            else:
                entries[key] = ("object", key)

        ordered = [entries[name] for name in sorted(entries)]
        start = int(params.get("continuation-token", "0"))
        page_size = int(params.get("max-keys", self.page_size))
        page = ordered[start:start + page_size]
        truncated = start + page_size < len(ordered)

        parts = [f"<ListBucketResult><Name>{BUCKET}</Name><Prefix>{escape(prefix)}</Prefix>"]
        for kind, name in page:
            if kind == "object":
                obj = self.objects[name]
                parts.append(
                    f"<Contents><Key>{escape(name)}</Key><LastModified>{_iso(obj['modified'])}</LastModified>"
                    f"<ETag>&quot;{hashlib.md5(obj['data']).hexdigest()}&quot;</ETag>"
                    f"<Size>{len(obj['data'])}</Size></Contents>"
                )
            else:
                parts.append(f"<CommonPrefixes><Prefix>{escape(name)}</Prefix></CommonPrefixes>")
        parts.append(f"<IsTruncated>{'true' if truncated else 'false'}</IsTruncated>")
        if truncated:
            parts.append(f"<NextContinuationToken>{start + page_size}</NextContinuationToken>")
        parts.append("</ListBucketResult>")
        return _xml("".join(parts))

    def _list_versions(self, params):
        prefix = params.get("prefix", "")
        latest = {}
        for version in self.versions:
            latest[version["key"]] = version["version_id"]
        parts = ["<ListVersionsResult>"]
        for version in reversed(self.versions):
            if not version["key"].startswith(prefix):
                continue
            parts.append(
                f"<Version><Key>{escape(version['key'])}</Key><VersionId>{version['version_id']}</VersionId>"
                f"<IsLatest>{'true' if latest[version['key']] == version['version_id'] else 'false'}</IsLatest>"
                f"<LastModified>{_iso(version['modified'])}</LastModified><Size>{version['size']}</Size></Version>"
            )
        parts.append("<IsTruncated>false</IsTruncated></ListVersionsResult>")
        return _xml("".join(parts))

    def _list_uploads(self, params):
        prefix = params.get("prefix", "")
        parts = ["<ListMultipartUploadsResult>"]
        for upload_id, upload in self.uploads.items():
            if upload["key"].startswith(prefix):
                parts.append(
                    f"<Upload><Key>{escape(upload['key'])}</Key><UploadId>{upload_id}</UploadId>"
                    f"<Initiated>{_iso(upload['initiated'])}</Initiated></Upload>"
                )
        parts.append("<IsTruncated>false</IsTruncated></ListMultipartUploadsResult>")
        return _xml("".join(parts))

    def _list_parts(self, key, params):
        upload = self.uploads.get(params["uploadId"])
        if upload is None:
            return _error(404, "NoSuchUpload")
        parts = ["<ListPartsResult>"]
        for number in sorted(upload["parts"]):
            data = upload["parts"][number]
            parts.append(
                f"<Part><PartNumber>{number}</PartNumber><ETag>&quot;{hashlib.md5(data).hexdigest()}&quot;</ETag>"
                f"<Size>{len(data)}</Size></Part>"
            )
        parts.append("<IsTruncated>false</IsTruncated></ListPartsResult>")
        return _xml("".join(parts))


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest_asyncio.fixture
async def client(fake_s3):
    s3 = S3Client(
        endpoint=ENDPOINT,
        access_key=ACCESS_KEY,
        secret_key=SECRET_KEY,
        bucket=BUCKET,
        path_style=True,
        max_retries=1,
        transport=httpx.MockTransport(fake_s3.handler),
    )
    yield s3
    await s3.close()
