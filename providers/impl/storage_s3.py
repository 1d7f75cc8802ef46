from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from core.settings import DEFAULT_STREAM_CHUNK_SIZE
from providers.storage import (
    ObjectEntry,
    ObjectMetadata,
    ObjectNotFound,
    StorageOperator,
    entries_from_objects,
)
from providers.stream import empty_stream, iterate_blocking

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}


def _endpoint_url(endpoint: Optional[str]) -> Optional[str]:
    # boto3 wants a full URL; provider consoles usually hand out bare hosts
    endpoint = (endpoint or "").strip().rstrip("/")
    if not endpoint:
        return None
    if "://" not in endpoint:
        endpoint = f"https://{endpoint}"
    return endpoint


def _is_not_found(err: ClientError) -> bool:
    code = str((err.response or {}).get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES


def _range_header(offset: int, length: Optional[int]) -> Optional[str]:
    if length is None:
        return f"bytes={offset}-" if offset > 0 else None
    return f"bytes={offset}-{offset + length - 1}"


class S3StorageOperator(StorageOperator):
    """
    S3 API operator. Also serves the S3-compatible APIs of Aliyun OSS, Huawei
    OBS and Tencent COS (pass their endpoint and virtual addressing).

    A boto3 client is created per operator, i.e. per request, with its own
    connection pool and timeouts. botocore retries are off; retrying is the
    caller's decision.
    """

    def __init__(
        self,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        *,
        timeout: float,
        session_token: Optional[str] = None,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        addressing_style: Optional[str] = None,
        chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
    ):
        bucket = (bucket or "").strip()
        if not bucket:
            raise ValueError("bucket is required for S3 storage operator")

        self.bucket = bucket
        self.chunk_size = chunk_size

        cfg_kwargs: Dict[str, Any] = {
            "connect_timeout": timeout,
            "read_timeout": timeout,
            "retries": {"total_max_attempts": 1, "mode": "standard"},
        }
        if region:
            cfg_kwargs["region_name"] = region
        if addressing_style:
            cfg_kwargs["s3"] = {"addressing_style": addressing_style}

        session = boto3.session.Session()
        self.s3 = session.client(
            "s3",
            endpoint_url=_endpoint_url(endpoint),
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            aws_session_token=session_token or None,
            region_name=region or None,
            config=Config(**cfg_kwargs),
        )
        logger.debug("s3 operator bucket=%s endpoint=%s region=%s", bucket, endpoint, region)

    # ------------------------------------------------------------------
    # list
    # ------------------------------------------------------------------

    def _list_objects(self, prefix: str, recursive: bool) -> List[Tuple[str, int]]:
        kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        if not recursive:
            kwargs["Delimiter"] = "/"

        out: List[Tuple[str, int]] = []
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(**kwargs):
            for obj in page.get("Contents") or []:
                out.append((obj["Key"], int(obj.get("Size") or 0)))
            for cp in page.get("CommonPrefixes") or []:
                out.append((cp["Prefix"], 0))
        return out

    async def list(self, path: str, recursive: bool = True) -> List[ObjectEntry]:
        objects = await asyncio.to_thread(self._list_objects, path, recursive)
        return entries_from_objects(path, objects)

    # ------------------------------------------------------------------
    # stat
    # ------------------------------------------------------------------

    def _stat(self, path: str) -> ObjectMetadata:
        if not path:
            self.s3.head_bucket(Bucket=self.bucket)
            return ObjectMetadata(0, True)

        try:
            resp = self.s3.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            if not (_is_not_found(e) and path.endswith("/")):
                raise
        else:
            return ObjectMetadata(int(resp.get("ContentLength") or 0), path.endswith("/"))

        # No marker object: a directory exists while anything lives under it.
        resp = self.s3.list_objects_v2(Bucket=self.bucket, Prefix=path, MaxKeys=1)
        if int(resp.get("KeyCount") or 0) > 0:
            return ObjectMetadata(0, True)
        raise ObjectNotFound(f"s3://{self.bucket}/{path}")

    async def stat(self, path: str) -> ObjectMetadata:
        return await asyncio.to_thread(self._stat, path)

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------

    def _open(self, path: str, offset: int, length: Optional[int]):
        kwargs: Dict[str, Any] = {"Bucket": self.bucket, "Key": path}
        header = _range_header(offset, length)
        if header:
            kwargs["Range"] = header
        resp = self.s3.get_object(**kwargs)
        return resp["Body"]

    async def reader(
        self,
        path: str,
        offset: int = 0,
        length: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        if length == 0:
            # zero-length range: existence check only, nothing to stream
            await self.stat(path)
            return empty_stream()

        body = await asyncio.to_thread(self._open, path, offset, length)
        return iterate_blocking(body.read, self.chunk_size, length, close=body.close)

