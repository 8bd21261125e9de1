"""
Order Service — Identity Provider クライアント

Bearer トークンを Identity Provider に問い合わせて、呼び出し元ユーザーを確定する。
検証できなかった場合はすべて Unauthenticated として扱う。
この呼び出しはストアへの書き込みより前に一度だけ行う。
"""

import logging
from typing import Protocol

import httpx

from .errors import Unauthenticated
from .models import Identity

logger = logging.getLogger(__name__)


class IdentityVerifier(Protocol):
    async def verify(self, credential: str | None) -> Identity: ...


def bearer_token(authorization: str | None) -> str | None:
    """Authorization ヘッダーから Bearer トークンを取り出す。"""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class HttpIdentityVerifier:
    """GET {auth_url}/auth/v1/user でトークンを検証する。"""

    def __init__(
        self,
        auth_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.auth_url = auth_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def verify(self, credential: str | None) -> Identity:
        if not credential:
            logger.warning("No authorization header")
            raise Unauthenticated()

        headers = {"Authorization": f"Bearer {credential}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.get(f"{self.auth_url}/auth/v1/user", headers=headers)
                resp.raise_for_status()
                data = resp.json()
            except httpx.HTTPError as e:
                logger.warning("Auth error: %s", e)
                raise Unauthenticated() from e
            except ValueError as e:
                logger.warning("Auth error: malformed user response")
                raise Unauthenticated() from e

        user_id = data.get("id") if isinstance(data, dict) else None
        if not user_id:
            logger.warning("Auth error: user response has no id")
            raise Unauthenticated()
        return Identity(user_id=str(user_id), email=data.get("email"))
