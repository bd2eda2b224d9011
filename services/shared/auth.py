"""
Shared — 認証 (Authenticator)

トークン検証そのものは外部の認証基盤の責務。
コアは検証結果の Principal {subject_id, is_admin} だけを使う。

実装は設定 (AUTH_BACKEND) で切り替える:
  keycloak  Keycloak の userinfo エンドポイントでトークンを検証
  static    トークン → Principal の固定テーブル（開発・テスト・サービス間呼び出し用）
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
from fastapi import Header

from .errors import AuthenticationError, AuthorizationError, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    subject_id: str
    is_admin: bool = False


class Authenticator(Protocol):
    async def verify(self, token: str) -> Principal: ...

    async def aclose(self) -> None: ...


class StaticTokenAuthenticator:
    """
    "token:subject[:admin]" をカンマ区切りで並べた設定から
    トークンテーブルを作る。
    """

    def __init__(self, tokens: dict[str, Principal]) -> None:
        self._tokens = dict(tokens)

    @classmethod
    def from_config(cls, raw: str) -> "StaticTokenAuthenticator":
        tokens: dict[str, Principal] = {}
        for entry in filter(None, (part.strip() for part in raw.split(","))):
            fields = entry.split(":")
            if len(fields) < 2:
                raise ValueError(f"Malformed static token entry: {entry!r}")
            token, subject = fields[0], fields[1]
            is_admin = len(fields) > 2 and fields[2].lower() == "admin"
            tokens[token] = Principal(subject_id=subject, is_admin=is_admin)
        return cls(tokens)

    async def verify(self, token: str) -> Principal:
        principal = self._tokens.get(token)
        if principal is None:
            raise AuthenticationError("Invalid or expired token")
        return principal

    async def aclose(self) -> None:
        pass


class KeycloakAuthenticator:
    def __init__(
        self,
        keycloak_url: str,
        realm: str,
        admin_role: str = "admin",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.userinfo_url = (
            f"{keycloak_url.rstrip('/')}/realms/{realm}/protocol/openid-connect/userinfo"
        )
        self.admin_role = admin_role
        self._client = client or httpx.AsyncClient(timeout=10.0)

    async def verify(self, token: str) -> Principal:
        try:
            resp = await self._client.get(
                self.userinfo_url, headers={"Authorization": f"Bearer {token}"}
            )
        except httpx.TransportError as e:
            raise TransientError(f"Identity provider unreachable: {e}") from e

        if resp.status_code in (401, 403):
            raise AuthenticationError("Invalid or expired token")
        if resp.status_code >= 500:
            raise TransientError(f"Identity provider error: {resp.status_code}")
        resp.raise_for_status()

        info = resp.json()
        roles = set(info.get("roles") or [])
        roles.update((info.get("realm_access") or {}).get("roles") or [])
        return Principal(subject_id=info["sub"], is_admin=self.admin_role in roles)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_authenticator(
    backend: str,
    *,
    static_tokens: str = "",
    keycloak_url: str = "",
    keycloak_realm: str = "",
    admin_role: str = "admin",
) -> Authenticator:
    if backend == "static":
        return StaticTokenAuthenticator.from_config(static_tokens)
    if backend == "keycloak":
        return KeycloakAuthenticator(keycloak_url, keycloak_realm, admin_role)
    raise ValueError(f"Unknown AUTH_BACKEND: {backend}")


def bearer_token(authorization: str | None = Header(default=None)) -> str:
    """Authorization: Bearer <token> ヘッダからトークンを取り出す。"""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("No authorization token provided")
    return authorization[len("Bearer "):]


def ensure_owner_or_admin(principal: Principal, owner_id: str) -> None:
    if principal.is_admin or principal.subject_id == owner_id:
        return
    raise AuthorizationError(
        f"Subject {principal.subject_id} may not act on a resource owned by {owner_id}"
    )


def ensure_admin(principal: Principal) -> None:
    if not principal.is_admin:
        raise AuthorizationError("Administrator privileges required")
