from __future__ import annotations

import logging
import ssl
from typing import Dict, List, Optional, Union

import httpx

from core.errors import BackendError, InvalidURI
from providers.backend import Backend
from providers.stream import Body, limit_stream, skip_stream, translate_errors
from schemas import GetRequest, GetResponse, HeadRequest, HeadResponse

logger = logging.getLogger(__name__)


def _ssl_context(client_certs: Optional[List[bytes]]) -> Union[ssl.SSLContext, bool]:
    """
    Trust the system store plus any per-request certificates (PEM or DER).
    """
    if not client_certs:
        return True

    ctx = ssl.create_default_context()
    for cert in client_certs:
        if cert.lstrip().startswith(b"-----BEGIN"):
            ctx.load_verify_locations(cadata=cert.decode("ascii"))
        else:
            ctx.load_verify_locations(cadata=cert)
    return ctx


def _headers(response: httpx.Response) -> Dict[str, str]:
    return {k: v for k, v in response.headers.items()}


def _content_length(response: httpx.Response) -> Optional[int]:
    raw = (response.headers.get("content-length") or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class HTTPBackend(Backend):
    """
    Plain HTTP(S) origin.

    A fresh httpx.AsyncClient per request carries the request timeout and
    trusted certificates. Non-2xx answers come back as success=False responses;
    transport failures raise BackendError. No retries here.
    """

    def __init__(self, scheme: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._scheme = scheme
        # Tests inject httpx.MockTransport here.
        self._transport = transport

    def scheme(self) -> str:
        return self._scheme

    def _client(self, timeout: float, client_certs: Optional[List[bytes]]) -> httpx.AsyncClient:
        kwargs = {"timeout": timeout, "follow_redirects": True}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            kwargs["verify"] = _ssl_context(client_certs)
        return httpx.AsyncClient(**kwargs)

    @staticmethod
    def _check_url(url: str) -> None:
        try:
            parsed = httpx.URL(url)
        except Exception as err:
            raise InvalidURI(url) from err
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise InvalidURI(url)

    async def head(self, request: HeadRequest) -> HeadResponse:
        logger.info("head request %s %s: %s", request.task_id, request.url, request.http_header)
        self._check_url(request.url)

        try:
            async with self._client(request.timeout, request.client_certs) as client:
                response = await client.head(request.url, headers=request.http_header or {})
        except httpx.HTTPError as err:
            logger.error("head request failed %s %s: %s", request.task_id, request.url, err)
            raise BackendError(message=str(err) or type(err).__name__) from err

        success = response.is_success
        logger.info("head response %s %s: %s %s", request.task_id, request.url, response.status_code, _content_length(response))

        return HeadResponse(
            success=success,
            content_length=_content_length(response),
            http_header=_headers(response),
            http_status_code=response.status_code,
            entries=[],
            error_message=None if success else (response.reason_phrase or f"status {response.status_code}"),
        )

    async def get(self, request: GetRequest) -> GetResponse:
        logger.info("get request %s %s: %s", request.piece_id, request.url, request.http_header)
        self._check_url(request.url)

        headers = dict(request.http_header or {})
        if request.range is not None:
            headers["Range"] = request.range.to_header()

        client = self._client(request.timeout, request.client_certs)
        try:
            response = await client.send(client.build_request("GET", request.url, headers=headers), stream=True)
        except httpx.HTTPError as err:
            await client.aclose()
            logger.error("get request failed %s %s: %s", request.piece_id, request.url, err)
            raise BackendError(message=str(err) or type(err).__name__) from err

        async def _close() -> None:
            try:
                await response.aclose()
            finally:
                await client.aclose()

        def _wrap(err: Exception) -> Exception:
            logger.error("get request failed %s %s: %s", request.piece_id, request.url, err)
            return BackendError(
                message=str(err) or type(err).__name__,
                status_code=response.status_code,
                header=_headers(response),
            )

        success = response.is_success
        if not success:
            logger.error("get response %s %s: %s", request.piece_id, request.url, response.status_code)

        chunks = response.aiter_bytes()
        if success and request.range is not None:
            if response.status_code != httpx.codes.PARTIAL_CONTENT:
                # origin ignored Range and sent the whole entity
                logger.warning("get response %s %s: range ignored by origin", request.piece_id, request.url)
                chunks = skip_stream(chunks, request.range.start)
            chunks = limit_stream(chunks, request.range.length)

        return GetResponse(
            success=success,
            http_header=_headers(response),
            http_status_code=response.status_code,
            reader=Body(translate_errors(chunks, _wrap), on_close=_close),
            error_message=None if success else (response.reason_phrase or f"status {response.status_code}"),
        )
