import hashlib
import hmac
import logging
import secrets
from typing import Optional

from fastapi import HTTPException, Request, WebSocket

from .config import settings

logger = logging.getLogger(__name__)


class TokenAuth:
    """Checks the capability token issued by the external auth service.

    The token arrives as a bearer header, a ``token`` query parameter (browsers
    cannot set headers on WebSockets) or the session cookie.
    """

    def __init__(self, token: Optional[str] = None, cookie_name: Optional[str] = None) -> None:
        configured = token if token is not None else settings.api_token
        self.cookie_name = cookie_name or settings.auth_cookie_name
        if not configured:
            logger.warning(
                "API_TOKEN is not set; a random token was generated and API access is effectively disabled."
            )
            configured = secrets.token_urlsafe(32)
        self._token_hash = self._hash(configured)

    def verify(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return hmac.compare_digest(self._token_hash, self._hash(token))

    def token_from(self, connection: Request | WebSocket) -> Optional[str]:
        header = connection.headers.get("authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()
        return connection.query_params.get("token") or connection.cookies.get(self.cookie_name)

    def require(self, request: Request) -> None:
        if not self.verify(self.token_from(request)):
            raise HTTPException(status_code=401, detail="Invalid or missing token")

    def _hash(self, token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
