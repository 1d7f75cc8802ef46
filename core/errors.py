from __future__ import annotations

from typing import Dict, Optional


class ClientError(Exception):
    """
    Base error for everything raised by the backend layer.

    Callers can catch this one type; provider SDK exceptions never escape.
    """


class InvalidParameter(ClientError):
    def __init__(self, message: str = "invalid parameter") -> None:
        super().__init__(message)
        self.message = message


class InvalidURI(ClientError):
    def __init__(self, url: str) -> None:
        super().__init__(f"invalid uri: {url}")
        self.url = url


class BackendError(ClientError):
    """
    Failure attributable to the remote origin, or to missing credentials.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        header: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.header = header

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"backend error {self.status_code}: {self.message}"
        return f"backend error: {self.message}"


class PluginError(ClientError):
    def __init__(self, message: str) -> None:
        super().__init__(f"plugin error: {message}")
        self.message = message
