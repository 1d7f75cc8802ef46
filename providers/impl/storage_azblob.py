from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from azure.core.credentials import AzureNamedKeyCredential
from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobPrefix, BlobServiceClient

from core.settings import DEFAULT_STREAM_CHUNK_SIZE
from providers.storage import (
    ObjectEntry,
    ObjectMetadata,
    ObjectNotFound,
    StorageOperator,
    entries_from_objects,
)
from providers.stream import empty_stream, iterate_in_thread

logger = logging.getLogger(__name__)


def _account_url(account_name: str, endpoint: Optional[str]) -> str:
    endpoint = (endpoint or "").strip().rstrip("/")
    if not endpoint:
        return f"https://{account_name}.blob.core.windows.net"
    if "://" not in endpoint:
        return f"https://{endpoint}"
    return endpoint


class AzureBlobStorageOperator(StorageOperator):
    """
    Azure Blob Storage operator. The URL bucket is the container; the access
    key pair is the storage account name and key.
    """

    def __init__(
        self,
        container: str,
        account_name: str,
        account_key: str,
        *,
        timeout: float,
        endpoint: Optional[str] = None,
        chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
    ):
        self.container_name = container
        self.service = BlobServiceClient(
            account_url=_account_url(account_name, endpoint),
            credential=AzureNamedKeyCredential(account_name, account_key),
            connection_timeout=timeout,
            read_timeout=timeout,
            retry_total=0,
            max_single_get_size=chunk_size,
            max_chunk_get_size=chunk_size,
        )
        self.container = self.service.get_container_client(container)
        logger.debug("azblob operator container=%s account=%s", container, account_name)

    def _list_objects(self, prefix: str, recursive: bool) -> List[Tuple[str, int]]:
        if recursive:
            return [(b.name, int(b.size or 0)) for b in self.container.list_blobs(name_starts_with=prefix)]

        out: List[Tuple[str, int]] = []
        for item in self.container.walk_blobs(name_starts_with=prefix, delimiter="/"):
            if isinstance(item, BlobPrefix):
                out.append((item.name, 0))
            else:
                out.append((item.name, int(item.size or 0)))
        return out

    async def list(self, path: str, recursive: bool = True) -> List[ObjectEntry]:
        objects = await asyncio.to_thread(self._list_objects, path, recursive)
        return entries_from_objects(path, objects)

    def _stat(self, path: str) -> ObjectMetadata:
        if not path:
            self.container.get_container_properties()
            return ObjectMetadata(0, True)

        try:
            props = self.container.get_blob_client(path).get_blob_properties()
        except ResourceNotFoundError:
            if not path.endswith("/"):
                raise
        else:
            return ObjectMetadata(int(props.size or 0), path.endswith("/"))

        blobs = self.container.list_blobs(name_starts_with=path, results_per_page=1)
        if next(iter(blobs), None) is not None:
            return ObjectMetadata(0, True)
        raise ObjectNotFound(f"abs://{self.container_name}/{path}")

    async def stat(self, path: str) -> ObjectMetadata:
        return await asyncio.to_thread(self._stat, path)

    def _download(self, path: str, offset: int, length: Optional[int]):
        kwargs: Dict[str, Any] = {}
        if offset or length is not None:
            kwargs["offset"] = offset
            kwargs["length"] = length
        return self.container.get_blob_client(path).download_blob(**kwargs)

    async def reader(
        self,
        path: str,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        if length == 0:
            await self.stat(path)
            return empty_stream()

        downloader = await asyncio.to_thread(self._download, path, offset, length)
        return iterate_in_thread(downloader.chunks())
