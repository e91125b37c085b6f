"""
AWS Signature V4 signer for bucketflow
"""

import hashlib
import hmac
import logging
from datetime import datetime, UTC
from typing import Dict, Mapping, Optional, Union
from urllib.parse import quote

from .error import SigningException
from .models import SignedRequest

ALGORITHM = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()
MAX_PRESIGN_EXPIRY = 604800

logger = logging.getLogger(__name__)


def aws_encode(value: str, encode_slash: bool = True) -> str:
    """Percent-encode everything outside letters, digits and ``-_.~``."""
    return quote(value, safe="" if encode_slash else "/")


class AwsSignatureV4Signer:
    """
    Signs requests using AWS Signature Version 4.

    The signer is pure: it performs no I/O, keeps no per-request state and
    computes every signature from scratch.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        service: str = "s3",
    ):
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.service = service

    @staticmethod
    def canonical_uri(path: str) -> str:
        """
        Encode a raw (unencoded) path, keeping ``/`` separators.

        The path is never run through a URL parser, so a trailing slash that
        addresses a folder placeholder object survives. Segments made only of
        dots are legal key text; they are escaped so HTTP clients do not
        collapse them as relative references.
        """
        if not path:
            return "/"
        if not path.startswith("/"):
            path = "/" + path
        segments = aws_encode(path, encode_slash=False).split("/")
        return "/".join(
            "%2E" * len(segment) if segment in (".", "..") else segment
            for segment in segments
        )

    @staticmethod
    def canonical_querystring(params: Optional[Mapping[str, Optional[str]]]) -> str:
        if not params:
            return ""
        encoded = sorted(
            (aws_encode(str(k)), aws_encode("" if v is None else str(v)))
            for k, v in params.items()
        )
        return "&".join(f"{k}={v}" for k, v in encoded)

    def sign_request(
        self,
        method: str,
        host: str,
        path: str,
        query_params: Optional[Mapping[str, Optional[str]]] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Union[bytes, str, None] = None,
        timestamp: Optional[datetime] = None,
    ) -> SignedRequest:
        """
        Sign a request and return the signature plus the headers to send.

        ``body`` may be the payload bytes, ``None`` for an empty payload, or
        :data:`UNSIGNED_PAYLOAD`.
        """
        if not host:
            raise SigningException("Cannot sign a request without a host.")
        if timestamp is None:
            timestamp = datetime.now(UTC)

        amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
        datestamp = timestamp.strftime("%Y%m%d")
        payload_hash = self._hash_payload(body)

        headers_to_sign = self._build_canonical_headers(headers or {})
        headers_to_sign["host"] = host.strip()
        headers_to_sign["x-amz-date"] = amz_date
        headers_to_sign["x-amz-content-sha256"] = payload_hash

        sorted_names = sorted(headers_to_sign)
        canonical_headers_str = "".join(f"{k}:{headers_to_sign[k]}\n" for k in sorted_names)
        signed_headers = ";".join(sorted_names)

        canonical_uri = self.canonical_uri(path)
        canonical_querystring = self.canonical_querystring(query_params)

        canonical_request = "\n".join([
            method.upper(),
            canonical_uri,
            canonical_querystring,
            canonical_headers_str,
            signed_headers,
            payload_hash,
        ])
        logger.debug("[Signer] Canonical request:\n%s", canonical_request)

        credential_scope = self._credential_scope(datestamp)
        signature = self._signature(datestamp, amz_date, credential_scope, canonical_request)

        auth_header = (
            f"{ALGORITHM} Credential={self.access_key}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        return SignedRequest(
            method=method.upper(),
            canonical_uri=canonical_uri,
            canonical_querystring=canonical_querystring,
            signed_headers=signed_headers,
            payload_hash=payload_hash,
            signature=signature,
            headers={
                "Authorization": auth_header,
                "x-amz-date": amz_date,
                "x-amz-content-sha256": payload_hash,
            },
        )

    def generate_presigned_url(
        self,
        method: str,
        host: str,
        path: str,
        query_params: Optional[Mapping[str, Optional[str]]] = None,
        expires_in: int = 3600,
        use_https: bool = True,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """
        Generate a presigned URL with AWS Signature V4.
        """
        if expires_in < 1 or expires_in > MAX_PRESIGN_EXPIRY:
            raise ValueError(
                "Expiry must be between 1 second and 604800 seconds (7 days) per AWS S3 specification."
            )
        if not host:
            raise SigningException("Cannot presign a URL without a host.")
        if timestamp is None:
            timestamp = datetime.now(UTC)

        amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
        datestamp = timestamp.strftime("%Y%m%d")
        credential_scope = self._credential_scope(datestamp)

        presigned_params: Dict[str, Optional[str]] = dict(query_params or {})
        presigned_params.update({
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{self.access_key}/{credential_scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(expires_in),
            "X-Amz-SignedHeaders": "host",
        })

        canonical_uri = self.canonical_uri(path)
        canonical_request = "\n".join([
            method.upper(),
            canonical_uri,
            self.canonical_querystring(presigned_params),
            f"host:{host.strip()}\n",
            "host",
            UNSIGNED_PAYLOAD,
        ])

        presigned_params["X-Amz-Signature"] = self._signature(
            datestamp, amz_date, credential_scope, canonical_request
        )

        scheme = "https" if use_https else "http"
        return f"{scheme}://{host}{canonical_uri}?{self.canonical_querystring(presigned_params)}"

    def _credential_scope(self, datestamp: str) -> str:
        return f"{datestamp}/{self.region}/{self.service}/aws4_request"

    def _signature(
        self, datestamp: str, amz_date: str, credential_scope: str, canonical_request: str
    ) -> str:
        string_to_sign = "\n".join([
            ALGORITHM,
            amz_date,
            credential_scope,
            hashlib.sha256(canonical_request.encode()).hexdigest(),
        ])
        return hmac.new(
            self._derive_signing_key(datestamp),
            string_to_sign.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _build_canonical_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        """Keep the x-amz-* and content-type headers, lower-cased and trimmed."""
        canonical = {}
        for key, value in headers.items():
            name = key.lower().strip()
            if name.startswith("x-amz-") or name == "content-type":
                canonical[name] = str(value).strip()
        return canonical

    def _hash_payload(self, body: Union[bytes, str, None]) -> str:
        if body is None:
            return EMPTY_PAYLOAD_HASH
        if isinstance(body, str):
            if body == UNSIGNED_PAYLOAD:
                return UNSIGNED_PAYLOAD
            body = body.encode()
        return hashlib.sha256(body).hexdigest()

    def _derive_signing_key(self, datestamp: str) -> bytes:
        """Derive the signing key for AWS Signature V4."""
        k_date = hmac.new(
            f"AWS4{self.secret_key}".encode(),
            datestamp.encode(),
            hashlib.sha256
        ).digest()

        k_region = hmac.new(k_date, self.region.encode(), hashlib.sha256).digest()
        k_service = hmac.new(k_region, self.service.encode(), hashlib.sha256).digest()
        k_signing = hmac.new(k_service, "aws4_request".encode(), hashlib.sha256).digest()

        return k_signing
