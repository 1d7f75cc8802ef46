from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence
from urllib.parse import SplitResult, quote, unquote, urlsplit, urlunsplit

from core.errors import BackendError, InvalidURI
from core.settings import get_settings
from providers.backend import Backend
from providers.impl.storage_azblob import AzureBlobStorageOperator
from providers.impl.storage_gcs import GCSStorageOperator
from providers.impl.storage_s3 import S3StorageOperator
from providers.storage import StorageOperator
from providers.stream import Body, limit_stream, translate_errors
from schemas import (
    DirEntry,
    GetRequest,
    GetResponse,
    HeadRequest,
    HeadResponse,
    ObjectStorage,
    Scheme,
)

logger = logging.getLogger(__name__)

# Characters left as-is when writing a decoded key back into a URL path.
_PATH_SAFE = "/~!$&'()*+,;=:@"

# OSS, OBS and COS have no usable default endpoint; without one boto3 would talk to AWS.
_S3_COMPATIBLE_FIELDS = ("endpoint", "access_key_id", "access_key_secret")


def _host(netloc: str) -> str:
    host = netloc.rpartition("@")[2]
    if host.startswith("["):
        return host[: host.find("]") + 1]
    return host.partition(":")[0]


# ---------------------------------------------------------------------
# ParsedURL
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedURL:
    """
    Object storage URL in the form `scheme://<bucket>/<key>`.

    `key` is percent-decoded with the leading "/" stripped. Whether the URL
    names a directory is read off the original path every time.
    """

    url: SplitResult
    scheme: Scheme
    bucket: str
    key: str

    @classmethod
    def parse(cls, raw: str) -> "ParsedURL":
        try:
            url = urlsplit(raw)
        except ValueError as err:
            logger.error("parse url failed %s: %s", raw, err)
            raise InvalidURI(raw) from err

        bucket = _host(url.netloc)
        if not bucket:
            raise InvalidURI(raw)

        try:
            scheme = Scheme.parse(url.scheme)
        except ValueError as err:
            logger.error("parse scheme failed %s: %s", raw, err)
            raise InvalidURI(raw) from err
        if scheme not in Scheme.object_storage():
            logger.error("parse scheme failed %s: not an object storage scheme", raw)
            raise InvalidURI(raw)

        if not url.path.startswith("/"):
            raise InvalidURI(raw)
        key = unquote(url.path[1:], encoding="utf-8", errors="replace")

        return cls(url=url, scheme=scheme, bucket=bucket, key=key)

    def is_dir(self) -> bool:
        return self.url.path.endswith("/")

    def make_url_by_entry_path(self, entry_path: str) -> str:
        """URL of a listed entry: same scheme, bucket, query; path replaced."""
        path = "/" + quote(entry_path.lstrip("/"), safe=_PATH_SAFE)
        return urlunsplit(self.url._replace(path=path))

    def __str__(self) -> str:
        return urlunsplit(self.url)


# ---------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------

def _join_fields(fields: Sequence[str]) -> str:
    if len(fields) <= 1:
        return "".join(fields)
    return ", ".join(fields[:-1]) + " and " + fields[-1]


def _require(
    object_storage: Optional[ObjectStorage],
    required: Sequence[str],
) -> ObjectStorage:
    """Fail before any network call when required credential fields are missing."""
    creds = object_storage or ObjectStorage()
    missing = [f for f in required if not (getattr(creds, f) or "").strip()]
    if not missing:
        return creds

    message = f"need {_join_fields(missing)}"
    logger.error(message)
    raise BackendError(message=message)


# ---------------------------------------------------------------------
# ObjectStorageBackend
# ---------------------------------------------------------------------

class ObjectStorageBackend(Backend):
    """
    Backend for the object storage schemes (s3, gcs, abs, oss, obs, cos).

    Every request gets its own operator (and so its own HTTP transport bound
    to the request timeout). Bucket always comes from the URL, never from the
    credentials.
    """

    def __init__(self, scheme: Scheme):
        if scheme not in Scheme.object_storage():
            raise ValueError(f"not an object storage scheme: {scheme}")
        self._scheme = scheme

    def scheme(self) -> str:
        return str(self._scheme)

    # -----------------------------------------------------------------
    # operators
    # -----------------------------------------------------------------

    def operator(
        self,
        parsed_url: ParsedURL,
        object_storage: Optional[ObjectStorage],
        timeout: float,
    ) -> StorageOperator:
        builders = {
            Scheme.S3: self.s3_operator,
            Scheme.GCS: self.gcs_operator,
            Scheme.ABS: self.abs_operator,
            Scheme.OSS: self.oss_operator,
            Scheme.OBS: self.obs_operator,
            Scheme.COS: self.cos_operator,
        }
        build = builders[self._scheme]

        try:
            return build(parsed_url, object_storage, timeout)
        except BackendError:
            raise
        except Exception as err:
            # malformed credential blobs, bad endpoints: still no network call made
            logger.error("init %s operator failed %s: %s", self._scheme, parsed_url, err)
            raise BackendError(message=str(err)) from err

    def s3_operator(self, parsed_url: ParsedURL, object_storage: Optional[ObjectStorage], timeout: float) -> StorageOperator:
        creds = _require(object_storage, ("access_key_id", "access_key_secret"))
        return S3StorageOperator(
            parsed_url.bucket,
            creds.access_key_id,
            creds.access_key_secret,
            timeout=timeout,
            session_token=creds.session_token,
            region=creds.region,
            endpoint=creds.endpoint,
            chunk_size=get_settings().stream_chunk_size,
        )

    def gcs_operator(self, parsed_url: ParsedURL, object_storage: Optional[ObjectStorage], timeout: float) -> StorageOperator:
        creds = _require(object_storage, ("credential",))
        return GCSStorageOperator(
            parsed_url.bucket,
            creds.credential,
            timeout=timeout,
            endpoint=creds.endpoint,
            predefined_acl=creds.predefined_acl,
            chunk_size=get_settings().stream_chunk_size,
        )

    def abs_operator(self, parsed_url: ParsedURL, object_storage: Optional[ObjectStorage], timeout: float) -> StorageOperator:
        creds = _require(object_storage, ("access_key_id", "access_key_secret"))
        return AzureBlobStorageOperator(
            parsed_url.bucket,
            creds.access_key_id,
            creds.access_key_secret,
            timeout=timeout,
            endpoint=creds.endpoint,
            chunk_size=get_settings().stream_chunk_size,
        )

    def oss_operator(self, parsed_url: ParsedURL, object_storage: Optional[ObjectStorage], timeout: float) -> StorageOperator:
        creds = _require(object_storage, _S3_COMPATIBLE_FIELDS)
        return self._s3_compatible_operator(parsed_url, creds, timeout)

    def obs_operator(self, parsed_url: ParsedURL, object_storage: Optional[ObjectStorage], timeout: float) -> StorageOperator:
        creds = _require(object_storage, _S3_COMPATIBLE_FIELDS)
        return self._s3_compatible_operator(parsed_url, creds, timeout)

    def cos_operator(self, parsed_url: ParsedURL, object_storage: Optional[ObjectStorage], timeout: float) -> StorageOperator:
        creds = _require(object_storage, _S3_COMPATIBLE_FIELDS)
        return self._s3_compatible_operator(parsed_url, creds, timeout)

    def _s3_compatible_operator(self, parsed_url: ParsedURL, creds: ObjectStorage, timeout: float) -> StorageOperator:
        # OSS, OBS and COS speak the S3 API on their own endpoints, virtual-hosted style.
        return S3StorageOperator(
            parsed_url.bucket,
            creds.access_key_id,
            creds.access_key_secret,
            timeout=timeout,
            region=creds.region,
            endpoint=creds.endpoint,
            addressing_style="virtual",
            chunk_size=get_settings().stream_chunk_size,
        )

    # -----------------------------------------------------------------
    # Backend
    # -----------------------------------------------------------------

    @staticmethod
    def _parse(request_id: str, url: str) -> ParsedURL:
        try:
            return ParsedURL.parse(url)
        except InvalidURI as err:
            logger.error("parse request url failed %s %s: %s", request_id, url, err)
            raise

    async def head(self, request: HeadRequest) -> HeadResponse:
        logger.info("head request %s %s: %s", request.task_id, request.url, request.http_header)

        parsed_url = self._parse(request.task_id, request.url)
        operator = self.operator(parsed_url, request.object_storage, request.timeout)

        entries: List[DirEntry] = []
        if parsed_url.is_dir():
            try:
                listed = await operator.list(parsed_url.key, recursive=True)
            except Exception as err:
                logger.error("list request failed %s %s: %s", request.task_id, request.url, err)
                raise BackendError(message=str(err)) from err

            entries = [
                DirEntry(
                    url=parsed_url.make_url_by_entry_path(entry.path),
                    content_length=entry.metadata.content_length,
                    is_dir=entry.metadata.is_dir,
                )
                for entry in listed
            ]

        try:
            metadata = await operator.stat(parsed_url.key)
        except Exception as err:
            logger.error("stat request failed %s %s: %s", request.task_id, request.url, err)
            raise BackendError(message=str(err)) from err

        logger.info("head response %s %s: %s", request.task_id, request.url, metadata.content_length)

        return HeadResponse(
            success=True,
            content_length=metadata.content_length,
            http_header=None,
            http_status_code=None,
            entries=entries,
            error_message=None,
        )

    async def get(self, request: GetRequest) -> GetResponse:
        logger.info("get request %s %s: %s", request.piece_id, request.url, request.http_header)

        parsed_url = self._parse(request.piece_id, request.url)
        operator = self.operator(parsed_url, request.object_storage, request.timeout)

        offset, length = 0, None
        if request.range is not None:
            offset, length = request.range.start, request.range.length

        try:
            chunks = await operator.reader(parsed_url.key, offset, length)
        except Exception as err:
            logger.error("get request failed %s %s: %s", request.piece_id, request.url, err)
            raise BackendError(message=str(err)) from err

        if length is not None:
            chunks = limit_stream(chunks, length)

        def _wrap(err: Exception) -> Exception:
            logger.error("get request failed %s %s: %s", request.piece_id, request.url, err)
            return BackendError(message=str(err))

        return GetResponse(
            success=True,
            http_header=None,
            http_status_code=200,
            reader=Body(translate_errors(chunks, _wrap)),
            error_message=None,
        )
