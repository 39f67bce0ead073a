"""Loop periódico de refresh de token por credencial ativa."""
from __future__ import annotations
from kink import di
from ..core.logging import get_logger
from ..core.settings import Settings
from ..domain.services.token_refresher import TokenRefresher
from ..repo.credentials import CredentialStore
from .loops import LoopRegistry, PeriodicLoop

log = get_logger()

def token_loop_key(credential) -> tuple:
    return (credential.tenant_id, credential.id, "token")

def refresh_tick(credential_id: int, refresher: TokenRefresher, store: CredentialStore) -> bool:
    """Uma iteração do loop. Retorna True (encerra) se a credencial sumiu ou foi desativada."""
    cred = store.get(credential_id)
    if cred is None or not cred.active:
        log.info("token_loop_finished", credential_id=credential_id)
        return True
    refresher.ensure_fresh(cred)
    return False

def start_token_refresh_loop(credential, registry: LoopRegistry | None = None,
                             refresher: TokenRefresher | None = None, store: CredentialStore | None = None,
                             settings: Settings | None = None) -> PeriodicLoop:
    s = settings or di[Settings]
    registry = registry or di[LoopRegistry]
    refresher = refresher or di[TokenRefresher]
    store = store or di[CredentialStore]
    loop = PeriodicLoop(
        name=f"token-{credential.id}",
        fn=lambda: refresh_tick(credential.id, refresher, store),
        interval_s=s.token_refresh_interval_s,
    )
    return registry.register(token_loop_key(credential), loop)

def start_all_token_refresh_loops(registry: LoopRegistry | None = None, store: CredentialStore | None = None) -> int:
    """Inicia um loop por credencial ativa (usado no boot da aplicação)."""
    store = store or di[CredentialStore]
    count = 0
    for cred in store.list_active():
        start_token_refresh_loop(cred, registry=registry, store=store)
        count += 1
    return count

def stop_token_refresh_loop(credential, registry: LoopRegistry | None = None) -> bool:
    registry = registry or di[LoopRegistry]
    return registry.unregister(token_loop_key(credential)) is not None
