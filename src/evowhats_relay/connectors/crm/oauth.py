"""OAuth 2.0 do Bitrix24: troca de authorization code e refresh de token."""
from __future__ import annotations
from datetime import timedelta
from typing import Any, Dict
import httpx
from kink import di
from ...core.db import utcnow
from ...core.errors import TransportError, RemoteApiError
from ...core.logging import get_logger
from ...core.settings import Settings
from ...ports.interfaces import TokenGrantDTO

log = get_logger()


def _parse_scope(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(x) for x in raw if x]
    if isinstance(raw, str):
        return [p.strip() for p in raw.split(",") if p.strip()]
    return []


class BitrixOAuth:
    """Cliente do endpoint de token (`oauth.bitrix.info/oauth/token/`)."""

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.s = settings or di[Settings]
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.s.http_timeout_s, transport=self.transport)

    def _grant(self, form: Dict[str, str]) -> TokenGrantDTO:
        form = {"client_id": self.s.crm_client_id, "client_secret": self.s.crm_client_secret, **form}
        try:
            with self._client() as cli:
                r = cli.post(self.s.crm_token_url, data=form)
        except httpx.HTTPError as exc:
            raise TransportError(f"token endpoint unreachable: {exc}") from exc

        body: Dict[str, Any] = {}
        if "application/json" in r.headers.get("content-type", "") or r.text.startswith("{"):
            try:
                body = r.json()
            except ValueError:
                body = {}
        if r.status_code // 100 != 2 or not body.get("access_token"):
            code = str(body.get("error") or r.status_code)
            raise RemoteApiError(
                body.get("error_description") or f"token endpoint returned {r.status_code}",
                status_code=r.status_code,
                code=code,
                transient=r.status_code >= 500,
            )
        expires_in = int(body.get("expires_in") or 3600)
        portal = body.get("client_endpoint") or body.get("domain")
        if portal and "/rest/" in portal:
            portal = portal.split("/rest/", 1)[0]
        return TokenGrantDTO(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=expires_in),
            portal=portal,
            member_id=body.get("member_id"),
            scope=_parse_scope(body.get("scope")),
        )

    def exchange_code(self, code: str) -> TokenGrantDTO:
        """Troca o authorization code recebido no callback por tokens."""
        grant = self._grant({"grant_type": "authorization_code", "code": code})
        log.info("oauth_code_exchanged", portal=grant.portal, member_id=grant.member_id)
        return grant

    def refresh(self, refresh_token: str) -> TokenGrantDTO:
        """Troca o refresh token. O Bitrix invalida o refresh token anterior a cada troca."""
        return self._grant({"grant_type": "refresh_token", "refresh_token": refresh_token})
