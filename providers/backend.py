from __future__ import annotations

from typing import Protocol, runtime_checkable

from schemas import GetRequest, GetResponse, HeadRequest, HeadResponse


@runtime_checkable
class Backend(Protocol):
    """
    Origin abstraction. One instance serves every request for its scheme, so
    implementations must keep no per-request mutable state.

    Builtin backends live in providers/impl; extension backends are returned by
    a plugin module's `register_plugin()` (see providers/plugins.py).
    """

    def scheme(self) -> str:
        """Scheme served by this backend. Diagnostics only; dispatch is by registry key."""
        ...

    async def head(self, request: HeadRequest) -> HeadResponse:
        """
        Metadata for the target without transferring its body. Directory
        targets also carry one entry per descendant.
        """
        ...

    async def get(self, request: GetRequest) -> GetResponse:
        """Open a lazy, forward-only stream of the target (or of request.range)."""
        ...
