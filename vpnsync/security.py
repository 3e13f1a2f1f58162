"""Bearer token guard for the synchronisation API."""
from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Iterable, Tuple

from fastapi import HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger("vpnsync.security")


def _digest(token: str) -> bytes:
    return hashlib.sha256(token.encode("utf-8")).digest()


class TokenAuth:
    """Accept requests carrying one of the configured operator tokens.

    Only SHA-256 digests of the tokens are kept, and the digests are compared
    in constant time so neither token length nor prefix leaks through timing.
    """

    def __init__(self, tokens: Iterable[str]):
        digests: Tuple[bytes, ...] = tuple(
            _digest(token.strip()) for token in tokens if token and token.strip()
        )
        if not digests:
            raise ValueError("At least one API token must be provided")
        self._digests = digests
        self._bearer = HTTPBearer(auto_error=False)

    def __len__(self) -> int:
        return len(self._digests)

    def accepts(self, token: str) -> bool:
        candidate = _digest(token)
        matched = False
        for digest in self._digests:
            matched |= secrets.compare_digest(candidate, digest)
        return matched

    async def __call__(self, request: Request) -> None:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not self.accepts(credentials.credentials):
            logger.warning("Rejected API token for %s %s", request.method, request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API token")


__all__ = ["TokenAuth"]
