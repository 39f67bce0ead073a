"""Garante que a credencial OAuth do Bitrix24 esteja válida antes do uso."""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from kink import di
from ...core.db import utcnow
from ...core.errors import TokenExpired, TransportError, RemoteApiError
from ...core.logging import get_logger
from ...core.settings import Settings
from ...connectors.crm.oauth import BitrixOAuth
from ...repo.credentials import CredentialStore

log = get_logger()


@dataclass
class RefreshOutcome:
    """Resultado de ensure_fresh. `error` preenchido quando o refresh falhou."""
    credential: object
    refreshed: bool = False
    error: TokenExpired | None = None


class TokenRefresher:
    """Renova o access token quando faltam `token_skew_s` segundos ou menos para expirar.

    Falhas de refresh não lançam exceção: a credencial original volta junto com um
    TokenExpired e o chamador decide. Refreshes concorrentes da mesma credencial são
    tolerados; vale a última escrita.
    """

    def __init__(
        self,
        store: CredentialStore | None = None,
        oauth: BitrixOAuth | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.s = settings or di[Settings]
        self.store = store or di[CredentialStore]
        self.oauth = oauth or di[BitrixOAuth]
        self.clock = clock or utcnow

    def remaining_s(self, credential) -> float | None:
        if credential.expires_at is None:
            return None
        return (credential.expires_at - self.clock()).total_seconds()

    def needs_refresh(self, credential) -> bool:
        remaining = self.remaining_s(credential)
        return remaining is not None and remaining <= self.s.token_skew_s

    def ensure_fresh(self, credential, force: bool = False) -> RefreshOutcome:
        if not force and not self.needs_refresh(credential):
            return RefreshOutcome(credential)
        if not credential.refresh_token:
            log.warning("token_refresh_skipped", credential_id=credential.id, reason="no_refresh_token")
            return RefreshOutcome(credential, error=TokenExpired("no refresh token"))
        try:
            grant = self.oauth.refresh(credential.refresh_token)
        except (TransportError, RemoteApiError) as exc:
            log.warning("token_refresh_failed", credential_id=credential.id, error=str(exc),
                        error_type=type(exc).__name__)
            return RefreshOutcome(credential, error=TokenExpired(str(exc)))

        updated = self.store.update_tokens(
            credential.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )
        if updated is None:
            # Credencial removida entre a leitura e o refresh; segue com os tokens novos em memória.
            credential.access_token = grant.access_token
            credential.refresh_token = grant.refresh_token or credential.refresh_token
            credential.expires_at = grant.expires_at
            updated = credential
        log.info("token_refreshed", credential_id=credential.id, expires_at=str(grant.expires_at), forced=force)
        return RefreshOutcome(updated, refreshed=True)
