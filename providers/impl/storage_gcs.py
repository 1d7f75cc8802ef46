from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from google.api_core.client_options import ClientOptions
from google.cloud import storage
from google.oauth2 import service_account

from core.settings import DEFAULT_STREAM_CHUNK_SIZE
from providers.storage import (
    ObjectEntry,
    ObjectMetadata,
    ObjectNotFound,
    StorageOperator,
    entries_from_objects,
)
from providers.stream import empty_stream

logger = logging.getLogger(__name__)


def load_credential_info(credential: str) -> Dict[str, Any]:
    """
    Accept the service account key either as JSON text or base64 of it.
    """
    raw = (credential or "").strip()
    if not raw.startswith("{"):
        raw = base64.b64decode(raw).decode("utf-8")
    info = json.loads(raw)
    if not isinstance(info, dict):
        raise ValueError("gcs credential must be a JSON object")
    return info


class GCSStorageOperator(StorageOperator):
    """
    Google Cloud Storage operator (service account credentials).

    Timeouts go on every call and SDK retries are disabled (retry=None).
    """

    def __init__(
        self,
        bucket: str,
        credential: str,
        *,
        timeout: float,
        endpoint: Optional[str] = None,
        predefined_acl: Optional[str] = None,
        chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
    ):
        info = load_credential_info(credential)
        creds = service_account.Credentials.from_service_account_info(info)
        options = ClientOptions(api_endpoint=endpoint) if endpoint else None

        self.client = storage.Client(
            project=info.get("project_id"),
            credentials=creds,
            client_options=options,
        )
        self.bucket_name = bucket
        self.bucket = self.client.bucket(bucket)
        self.timeout = timeout
        self.chunk_size = chunk_size
        # Write-path setting (object ACL on upload); accepted with the other GCS credential fields, unused by reads.
        self.predefined_acl = predefined_acl
        logger.debug("gcs operator bucket=%s endpoint=%s", bucket, endpoint)

    def _list_objects(self, prefix: str, recursive: bool) -> List[Tuple[str, int]]:
        kwargs: Dict[str, Any] = {"prefix": prefix, "timeout": self.timeout, "retry": None}
        if not recursive:
            kwargs["delimiter"] = "/"

        blobs = self.client.list_blobs(self.bucket_name, **kwargs)
        out = [(b.name, int(b.size or 0)) for b in blobs]
        # prefixes are only populated once the pages have been consumed
        out.extend((p, 0) for p in sorted(getattr(blobs, "prefixes", None) or []))
        return out

    async def list(self, path: str, recursive: bool = True) -> List[ObjectEntry]:
        objects = await asyncio.to_thread(self._list_objects, path, recursive)
        return entries_from_objects(path, objects)

    def _stat(self, path: str) -> ObjectMetadata:
        if not path:
            self.bucket.reload(timeout=self.timeout, retry=None)
            return ObjectMetadata(0, True)

        blob = self.bucket.get_blob(path, timeout=self.timeout, retry=None)
        if blob is not None:
            return ObjectMetadata(int(blob.size or 0), path.endswith("/"))

        if path.endswith("/"):
            blobs = self.client.list_blobs(
                self.bucket_name, prefix=path, max_results=1, timeout=self.timeout, retry=None
            )
            if any(True for _ in blobs):
                return ObjectMetadata(0, True)
        raise ObjectNotFound(f"gs://{self.bucket_name}/{path}")

    async def stat(self, path: str) -> ObjectMetadata:
        return await asyncio.to_thread(self._stat, path)

    async def reader(
        self,
        path: str,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        blob = await asyncio.to_thread(self.bucket.get_blob, path, timeout=self.timeout, retry=None)
        if blob is None:
            raise ObjectNotFound(f"gs://{self.bucket_name}/{path}")

        size = int(blob.size or 0)
        end = size if length is None else min(size, offset + length)
        if offset >= end:
            return empty_stream()
        return self._chunks(blob, offset, end)

    async def _chunks(self, blob, start: int, end: int) -> AsyncIterator[bytes]:
        pos = start
        while pos < end:
            last = min(end, pos + self.chunk_size) - 1
            data = await asyncio.to_thread(
                blob.download_as_bytes,
                start=pos,
                end=last,
                timeout=self.timeout,
                retry=None,
                checksum=None,
            )
            if not data:
                return
            pos += len(data)
            yield data
