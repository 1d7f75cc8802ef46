# schemas.py
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.settings import get_settings
from providers.stream import Body


def _default_timeout() -> float:
    return get_settings().request_timeout_seconds


# =============================================================================
# Scheme
# =============================================================================
class Scheme(str, Enum):
    """
    Builtin URL schemes. Extension backends register under plain strings.
    """

    HTTP = "http"
    HTTPS = "https"

    # Amazon Simple Storage Service.
    S3 = "s3"
    # Google Cloud Storage.
    GCS = "gcs"
    # Azure Blob Storage.
    ABS = "abs"
    # Aliyun Object Storage Service.
    OSS = "oss"
    # Huawei Cloud Object Storage Service.
    OBS = "obs"
    # Tencent Cloud Object Storage.
    COS = "cos"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, raw: str) -> "Scheme":
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            raise ValueError(f"invalid scheme: {raw}") from None

    @classmethod
    def object_storage(cls) -> FrozenSet["Scheme"]:
        return frozenset({cls.S3, cls.GCS, cls.ABS, cls.OSS, cls.OBS, cls.COS})


# =============================================================================
# Credentials / Range / Entries
# =============================================================================
class ObjectStorage(BaseModel):
    """
    Caller-supplied object storage credentials.

    Every field is optional here; each provider enforces its own minimum set
    when the operator is built.
    """

    model_config = ConfigDict(frozen=True)

    access_key_id: Optional[str] = None
    access_key_secret: Optional[str] = None
    session_token: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None
    # GCS service account JSON (raw or base64).
    credential: Optional[str] = None
    predefined_acl: Optional[str] = None


class Range(BaseModel):
    """Half-open byte range [start, start + length)."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=0)
    length: int = Field(..., ge=0)

    @property
    def end(self) -> int:
        return self.start + self.length

    def to_header(self) -> str:
        return f"bytes={self.start}-{max(self.start, self.end - 1)}"


class DirEntry(BaseModel):
    """One descendant of a listed directory."""

    url: str
    content_length: int = 0
    is_dir: bool = False


# =============================================================================
# Head (metadata)
# =============================================================================
class HeadRequest(BaseModel):
    task_id: str
    url: str
    http_header: Optional[Dict[str, str]] = None
    timeout: float = Field(default_factory=_default_timeout, gt=0)
    # PEM or DER encoded certificates trusted for this request.
    client_certs: Optional[List[bytes]] = None
    object_storage: Optional[ObjectStorage] = None


class HeadResponse(BaseModel):
    success: bool
    content_length: Optional[int] = None
    http_header: Optional[Dict[str, str]] = None
    http_status_code: Optional[int] = None
    entries: List[DirEntry] = Field(default_factory=list)
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def _success_has_no_error(self) -> "HeadResponse":
        if self.success and self.error_message is not None:
            raise ValueError("successful response must not carry an error message")
        return self


# =============================================================================
# Get (content)
# =============================================================================
class GetRequest(BaseModel):
    task_id: str
    piece_id: str
    url: str
    range: Optional[Range] = None
    http_header: Optional[Dict[str, str]] = None
    timeout: float = Field(default_factory=_default_timeout, gt=0)
    client_certs: Optional[List[bytes]] = None
    object_storage: Optional[ObjectStorage] = None


class GetResponse(BaseModel):
    """
    Content response. `reader` is consumed at most once and is not seekable;
    retrying means issuing a new GetRequest.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    http_header: Optional[Dict[str, str]] = None
    http_status_code: Optional[int] = None
    reader: Body
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def _success_has_no_error(self) -> "GetResponse":
        if self.success and self.error_message is not None:
            raise ValueError("successful response must not carry an error message")
        return self

    async def read(self) -> bytes:
        return await self.reader.read()

    async def text(self, encoding: str = "utf-8") -> str:
        return (await self.reader.read()).decode(encoding, errors="replace")
