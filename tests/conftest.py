from __future__ import annotations
from datetime import timedelta
from itertools import count
from types import SimpleNamespace
import httpx
import pytest
from kink import di
from evowhats_relay.core.db import utcnow
from evowhats_relay.core.di import bootstrap_di
from evowhats_relay.core.retry import RetryScheduler
from evowhats_relay.core.settings import Settings
from evowhats_relay.core.signature import SignatureValidator
from evowhats_relay.connectors.crm.bitrix_client import BitrixClient
from evowhats_relay.connectors.crm.oauth import BitrixOAuth
from evowhats_relay.connectors.whatsapp.evolution_adapter import CapabilityCache, EvolutionAdapter
from evowhats_relay.domain.services.binding_registry import BindingRegistry
from evowhats_relay.domain.services.connection_state import ConnectionStateMachine, SignalChannel
from evowhats_relay.domain.services.idempotency import IdempotencyGuard
from evowhats_relay.domain.services.inbound_relay import InboundRelay
from evowhats_relay.domain.services.outbound_relay import OutboundRelay
from evowhats_relay.domain.services.token_refresher import TokenRefresher
from evowhats_relay.repo import repo
from evowhats_relay.repo.credentials import CredentialStore
from evowhats_relay.repo.models import Base, CONNECTED
from evowhats_relay.tasks.loops import LoopRegistry

PORTAL = "https://acme.bitrix24.com"
QR_B64 = "iVBORw0KGgo" + "A" * 80


class Recorder:
    """Handler de httpx.MockTransport que guarda as requisições recebidas."""

    def __init__(self, responder):
        self.responder = responder
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        return self.responder(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> list[str]:
        return [c.url.path for c in self.calls]

    def count(self, fragment: str) -> int:
        return sum(1 for c in self.calls if fragment in c.url.path)


def evolution_responder():
    ids = count(1)

    def respond(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/message/send"):
            return httpx.Response(201, json={"key": {"id": f"WAOUT{next(ids)}"}, "status": "PENDING"})
        if path.startswith("/instance/connectionState"):
            return httpx.Response(200, json={"instance": {"instanceName": path.rsplit("/", 1)[-1], "state": "open"}})
        if path.startswith("/instance/create"):
            return httpx.Response(201, json={"instance": {"status": "created"}, "qrcode": {"base64": f"data:image/png;base64,{QR_B64}"}})
        if path.startswith(("/instance/qrcode", "/instance/connect")):
            return httpx.Response(200, json={"base64": f"data:image/png;base64,{QR_B64}", "pairingCode": "WZYEH1YY"})
        if path.startswith(("/instance/delete", "/instance/logout")):
            return httpx.Response(200, json={"status": "SUCCESS"})
        return httpx.Response(404, json={"error": "Not Found"})

    return respond


def bitrix_responder():
    ids = count(9001)

    def respond(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("imconnector.send.messages.json"):
            return httpx.Response(200, json={"result": {"SUCCESS": True, "DATA": {"RESULT": [
                {"session": {"ID": 12, "CHAT_ID": 555}, "message": [str(next(ids))], "SUCCESS": True},
            ]}}})
        if request.url.path.endswith("imopenlines.config.list.get.json"):
            return httpx.Response(200, json={"result": [{"ID": "7", "LINE_NAME": "WhatsApp"}]})
        return httpx.Response(200, json={"result": True})

    return respond


def oauth_responder(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={
        "access_token": "at-new",
        "refresh_token": "rt-new",
        "expires_in": 3600,
        "client_endpoint": f"{PORTAL}/rest/",
        "member_id": "m-acme",
        "scope": "imopenlines,imconnector,im",
    })


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'relay.db'}",
        crm_client_id="app.local",
        crm_client_secret="s3cr3t",
        crm_token_url="https://oauth.test/oauth/token/",
        evolution_base_url="http://evo.test",
        evolution_api_key="evo-key",
        evolution_api_version="2.2.3",
        status_poll_interval_s=0.01,
        status_poll_timeout_s=1.0,
    )


@pytest.fixture
def container(settings):
    bootstrap_di(settings)
    Session = di["session_factory"]
    Base.metadata.create_all(Session.kw["bind"])
    yield di
    di[LoopRegistry].stop_all()


@pytest.fixture
def no_sleep_retry(settings):
    return RetryScheduler(sleep=lambda _s: None, settings=settings)


@pytest.fixture
def wiring(container, settings, no_sleep_retry):
    """Serviços reais sobre banco SQLite, com HTTP das duas plataformas falso."""
    evo = Recorder(evolution_responder())
    crm_http = Recorder(bitrix_responder())
    oauth_http = Recorder(oauth_responder)
    store = CredentialStore()
    oauth = BitrixOAuth(settings, transport=oauth_http.transport())
    refresher = TokenRefresher(store, oauth, settings)
    crm = BitrixClient(settings, refresher, transport=crm_http.transport())
    wa = EvolutionAdapter(settings, CapabilityCache(), transport=evo.transport())
    bindings = BindingRegistry()
    machine = ConnectionStateMachine(wa, SignalChannel(), no_sleep_retry)
    inbound = InboundRelay(crm, store, bindings, IdempotencyGuard(), no_sleep_retry, SignatureValidator(),
                           machine, settings)
    outbound = OutboundRelay(wa, store, bindings, IdempotencyGuard(), no_sleep_retry, SignatureValidator(),
                             settings)
    return SimpleNamespace(
        evo=evo, crm_http=crm_http, oauth_http=oauth_http, store=store, oauth=oauth, refresher=refresher,
        crm=crm, wa=wa, bindings=bindings, machine=machine, inbound=inbound, outbound=outbound,
        retry=no_sleep_retry, loops=di[LoopRegistry],
    )


@pytest.fixture
def seeded(wiring):
    """Tenant t1 com credencial válida, instância evo_line_7 conectada e vinculada à linha 7."""
    repo.upsert_tenant("t1", name="Acme")
    cred = wiring.store.save(
        "t1", "acme.bitrix24.com",
        access_token="at-1", refresh_token="rt-1",
        expires_at=utcnow() + timedelta(hours=1),
        scope=["imopenlines", "imconnector"], member_id="m-acme",
    )
    inst = repo.create_instance("t1", "evo_line_7")
    inst = repo.update_instance(inst.id, status=CONNECTED)
    wiring.bindings.bind("t1", "7", inst.id)
    return SimpleNamespace(tenant_id="t1", credential=cred, instance=inst, line_id="7")


@pytest.fixture
def wa_upsert():
    def build(msg_id="WAMSG-1", text="Olá, tudo bem?", jid="5511988887777@s.whatsapp.net",
              instance="evo_line_7", from_me=False, push_name="Maria"):
        return {
            "event": "messages.upsert",
            "instance": instance,
            "data": {
                "key": {"remoteJid": jid, "fromMe": from_me, "id": msg_id},
                "pushName": push_name,
                "message": {"conversation": text},
                "messageType": "conversation",
            },
        }
    return build


@pytest.fixture
def crm_message_event():
    def build(chat_id="555", message_id="b-701", text="Bom dia! Como posso ajudar?", author_id="12",
              domain="acme.bitrix24.com", **extra_user):
        data = {
            "CHAT": {"ID": chat_id},
            "MESSAGE": {"ID": message_id, "MESSAGE": text, "AUTHOR_ID": author_id},
        }
        if extra_user:
            data["USER"] = extra_user
        return {"event": "ONIMOPENLINESMESSAGEADD", "data": data, "auth": {"domain": domain, "member_id": "m-acme"}}
    return build


@pytest.fixture
def qr_b64():
    return QR_B64
