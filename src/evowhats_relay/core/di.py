"""Bootstrap do container de DI (kink) para o relay Evolution ↔ Bitrix24.

Serviços registrados como `lambda c: ...` são criados sob demanda e reutilizados.
"""
from kink import di
from .settings import Settings
from .db import create_session_factory
from .retry import RetryScheduler
from .signature import SignatureValidator
from ..connectors.crm.oauth import BitrixOAuth
from ..connectors.crm.bitrix_client import BitrixClient
from ..connectors.whatsapp.evolution_adapter import CapabilityCache, EvolutionAdapter
from ..repo.credentials import CredentialStore
from ..domain.services.token_refresher import TokenRefresher
from ..domain.services.binding_registry import BindingRegistry
from ..domain.services.idempotency import IdempotencyGuard
from ..domain.services.connection_state import ConnectionStateMachine, SignalChannel
from ..domain.services.pairing import PairingService
from ..domain.services.inbound_relay import InboundRelay
from ..domain.services.outbound_relay import OutboundRelay
from ..domain.services.crm_auth import CrmAuthService
from ..tasks.loops import LoopRegistry

def bootstrap_di(settings: Settings | None = None) -> None:
    settings = settings or Settings()
    di[Settings] = settings
    # sessionmaker é callable: precisa ir embrulhado numa factory para o kink.
    di["session_factory"] = lambda _c: create_session_factory(settings.database_url)
    di[CapabilityCache] = CapabilityCache()
    di[SignalChannel] = SignalChannel()
    di[LoopRegistry] = LoopRegistry()
    di[SignatureValidator] = SignatureValidator()
    di[IdempotencyGuard] = IdempotencyGuard()
    di[RetryScheduler] = lambda c: RetryScheduler(settings=c[Settings])
    di[CredentialStore] = lambda c: CredentialStore(c["session_factory"])
    di[BindingRegistry] = lambda c: BindingRegistry(c["session_factory"])
    di[BitrixOAuth] = lambda c: BitrixOAuth(c[Settings])
    di[TokenRefresher] = lambda c: TokenRefresher(c[CredentialStore], c[BitrixOAuth], c[Settings])
    di[BitrixClient] = lambda c: BitrixClient(c[Settings], c[TokenRefresher])
    di[EvolutionAdapter] = lambda c: EvolutionAdapter(c[Settings], c[CapabilityCache])
    di[ConnectionStateMachine] = lambda c: ConnectionStateMachine(c[EvolutionAdapter], c[SignalChannel], c[RetryScheduler])
    di[PairingService] = lambda c: PairingService(c[EvolutionAdapter], c[ConnectionStateMachine], c[BindingRegistry], c[LoopRegistry], c[Settings])
    di[InboundRelay] = lambda c: InboundRelay(
        c[BitrixClient], c[CredentialStore], c[BindingRegistry], c[IdempotencyGuard],
        c[RetryScheduler], c[SignatureValidator], c[ConnectionStateMachine], c[Settings],
    )
    di[OutboundRelay] = lambda c: OutboundRelay(
        c[EvolutionAdapter], c[CredentialStore], c[BindingRegistry], c[IdempotencyGuard],
        c[RetryScheduler], c[SignatureValidator], c[Settings],
    )
    di[CrmAuthService] = lambda c: CrmAuthService(c[BitrixOAuth], c[CredentialStore], c[BitrixClient], c[LoopRegistry], c[Settings])
