"""Autorização OAuth do Bitrix24: início do fluxo, callback de instalação e desconexão explícita."""
from __future__ import annotations
import re
import httpx
from kink import di
from ...core.errors import InvalidOAuthState, RelayError
from ...core.logging import get_logger
from ...core.settings import Settings
from ...connectors.crm.bitrix_client import BitrixClient
from ...connectors.crm.oauth import BitrixOAuth
from ...repo import repo
from ...repo.credentials import CredentialStore, normalize_portal
from ...tasks.loops import LoopRegistry
from ...tasks.token_refresh import start_token_refresh_loop, stop_token_refresh_loop

log = get_logger()

_PORTAL_RE = re.compile(r"^https?://[a-z0-9][a-z0-9.-]*\.[a-z]{2,}$", re.IGNORECASE)


class CrmAuthService:
    def __init__(
        self,
        oauth: BitrixOAuth | None = None,
        store: CredentialStore | None = None,
        crm: BitrixClient | None = None,
        loops: LoopRegistry | None = None,
        settings: Settings | None = None,
    ):
        self.s = settings or di[Settings]
        self.oauth = oauth or di[BitrixOAuth]
        self.store = store or di[CredentialStore]
        self.crm = crm or di[BitrixClient]
        self.loops = loops or di[LoopRegistry]

    def start_authorization(self, tenant_id: str, portal_url: str) -> str:
        """Monta a URL `<portal>/oauth/authorize/` com um `state` novo ligado ao tenant.

        :raises ValueError: portal com formato inválido.
        """
        portal = normalize_portal(portal_url)
        if not _PORTAL_RE.match(portal):
            raise ValueError(f"invalid portal url: {portal_url!r}")
        repo.upsert_tenant(tenant_id)
        state = repo.create_oauth_state(tenant_id, portal)
        params = {"client_id": self.s.crm_client_id, "response_type": "code", "scope": self.s.crm_oauth_scope,
                  "state": state}
        if self.s.crm_redirect_uri:
            params["redirect_uri"] = self.s.crm_redirect_uri
        url = httpx.URL(f"{portal}/oauth/authorize/", params=params)
        log.info("crm_authorization_started", tenant_id=tenant_id, portal=portal)
        return str(url)

    def complete_authorization(self, code: str, domain: str, state: str | None,
                               start_refresh_loop: bool = True):
        """Valida o `state`, troca o code e grava a credencial ativa do (tenant, portal).

        O tenant vem do `state` emitido por start_authorization; o state vale uma vez só
        e precisa ter sido emitido para o mesmo portal do callback.
        """
        if not state:
            raise InvalidOAuthState("missing state")
        issued = repo.consume_oauth_state(state, self.s.crm_oauth_state_ttl_s)
        if issued is None:
            log.warning("oauth_state_rejected", domain=domain)
            raise InvalidOAuthState("unknown, expired or reused state")
        portal = normalize_portal(domain)
        if portal != issued.portal:
            log.warning("oauth_state_portal_mismatch", tenant_id=issued.tenant_id, expected=issued.portal,
                        got=portal)
            raise InvalidOAuthState("state issued for another portal")

        tenant_id = issued.tenant_id
        grant = self.oauth.exchange_code(code)
        cred = self.store.save(
            tenant_id,
            portal,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            scope=grant.scope,
            member_id=grant.member_id,
        )
        repo.log_event(tenant_id, None, "crm_authorized", {"portal": portal, "scope": grant.scope})
        if start_refresh_loop:
            start_token_refresh_loop(cred, registry=self.loops, store=self.store)
        if self.s.crm_events_handler_url:
            try:
                self.crm.bind_events(cred, self.s.crm_events_handler_url)
            except RelayError as exc:
                # A credencial fica salva; o bind pode ser refeito depois.
                log.warning("crm_events_bind_failed", tenant_id=tenant_id, error=str(exc))
        return cred

    def disconnect(self, tenant_id: str, portal: str | None = None) -> int:
        """Desativa as credenciais do tenant e encerra seus loops de refresh."""
        cred = self.store.get_active(tenant_id, portal)
        if cred is not None:
            stop_token_refresh_loop(cred, registry=self.loops)
        count = self.store.deactivate(tenant_id, portal)
        repo.log_event(tenant_id, None, "crm_disconnected", {"portal": portal, "count": count})
        return count
