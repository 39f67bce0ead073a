"""Adapter da Evolution API (WhatsApp) com negociação de endpoints por versão.

A API da Evolution muda de formato entre versões. Cada operação tem uma lista
ordenada de endpoints candidatos; o primeiro que responde 2xx vence e fica em
cache por (base_url, versão do provedor, operação).
"""
from __future__ import annotations
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Tuple
import time
import httpx
from kink import di
from ...core.errors import TransportError, RemoteApiError
from ...core.guardrails import phone_to_number
from ...core.logging import get_logger
from ...core.settings import Settings
from ...ports.interfaces import EntregaDTO, QrDTO, StatusDTO, WaOutboundMessageDTO
from .events import normalize_qr

log = get_logger()

# Status que indicam "tente o próximo candidato" (endpoint/formato não suportado).
UNSUPPORTED_STATUS = {400, 404, 405, 422}
# Em envio, 400 só indica formato errado quando a Evolution reclama de campo obrigatório;
# qualquer outro 400 (número inexistente etc.) é erro do pedido e não pode gerar reenvio.
SEND_OPS = frozenset({"send_text", "send_media"})

CONNECTED_STATES = {"open", "connected", "ready", "online"}
CLOSED_STATES = {"close", "closed", "disconnected", "logout", "loggedout", "refused"}


@dataclass(frozen=True)
class Candidate:
    name: str
    method: str
    path: str
    body: Callable[[Dict[str, Any]], Dict[str, Any] | None] | None = None


def _media_type(mime_or_kind: str | None) -> str:
    v = (mime_or_kind or "").lower()
    for kind in ("image", "video", "audio"):
        if kind in v:
            return kind
    return "document"


CANDIDATES: Dict[str, Tuple[Candidate, ...]] = {
    "create": (
        Candidate("create_v2", "POST", "/instance/create",
                  lambda a: {"instanceName": a["instance"], "qrcode": True, "integration": a["integration"],
                             **({"webhook": {"url": a["webhook_url"], "byEvents": False, "base64": True,
                                             "events": ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"]}}
                                if a.get("webhook_url") else {})}),
        Candidate("create_v1", "POST", "/instance/create",
                  lambda a: {"instanceName": a["instance"], "qrcode": True,
                             **({"webhook": a["webhook_url"], "webhook_by_events": False} if a.get("webhook_url") else {})}),
    ),
    "connect": (
        Candidate("connect", "GET", "/instance/connect/{instance}"),
    ),
    "status": (
        Candidate("connection_state", "GET", "/instance/connectionState/{instance}"),
        Candidate("status", "GET", "/instance/status/{instance}"),
        Candidate("fetch_instances", "GET", "/instance/fetchInstances?instanceName={instance}"),
    ),
    "qr": (
        Candidate("qrcode", "GET", "/instance/qrcode/{instance}"),
        Candidate("connect_qr", "GET", "/instance/connect/{instance}"),
        Candidate("qr", "GET", "/instance/qr/{instance}"),
    ),
    "send_text": (
        Candidate("send_text_v2", "POST", "/message/sendText/{instance}",
                  lambda a: {"number": a["number"], "text": a["text"]}),
        Candidate("send_text_v1", "POST", "/message/sendText/{instance}",
                  lambda a: {"number": a["number"], "options": {"delay": 0}, "textMessage": {"text": a["text"]}}),
    ),
    "send_media": (
        Candidate("send_media_v2", "POST", "/message/sendMedia/{instance}",
                  lambda a: {"number": a["number"], "mediatype": _media_type(a["media_url"]),
                             "media": a["media_url"], "caption": a["text"]}),
        Candidate("send_media_v1", "POST", "/message/sendMedia/{instance}",
                  lambda a: {"number": a["number"], "mediaMessage": {"mediatype": _media_type(a["media_url"]),
                                                                   "media": a["media_url"], "caption": a["text"]}}),
    ),
    "delete": (
        Candidate("delete", "DELETE", "/instance/delete/{instance}"),
        Candidate("logout_fallback", "DELETE", "/instance/logout/{instance}"),
    ),
}


class CapabilityCache:
    """Candidato vencedor por (base_url, versão, operação). Compartilhado entre requisições."""

    def __init__(self):
        self._lock = Lock()
        self._data: Dict[Tuple[str, str, str], str] = {}

    def get(self, key: Tuple[str, str, str]) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: Tuple[str, str, str], candidate: str) -> None:
        with self._lock:
            self._data[key] = candidate

    def invalidate(self, key: Tuple[str, str, str]) -> None:
        with self._lock:
            self._data.pop(key, None)

    def snapshot(self) -> Dict[Tuple[str, str, str], str]:
        with self._lock:
            return dict(self._data)


def _find(node: Any, *names: str) -> Any:
    wanted = {n.lower() for n in names}
    stack = [node]
    while stack:
        cur = stack.pop(0)
        if isinstance(cur, dict):
            for k, v in cur.items():
                if str(k).lower() in wanted and isinstance(v, (str, int)) and v != "":
                    return v
            stack.extend(cur.values())
        elif isinstance(cur, list):
            stack.extend(cur)
    return None


def is_shape_rejection(op: str, r: httpx.Response) -> bool:
    """O candidato não entende este formato de requisição (vale tentar o próximo)?"""
    if r.status_code not in UNSUPPORTED_STATUS:
        return False
    if r.status_code != 400 or op not in SEND_OPS:
        return True
    return "requir" in r.text.lower()


def normalize_state(raw: Any) -> str:
    """Estado cru da Evolution → open|close|connecting."""
    s = str(raw or "").strip().lower()
    if s in CONNECTED_STATES:
        return "open"
    if s in CLOSED_STATES:
        return "close"
    return "connecting"


class EvolutionAdapter:
    """Cliente da Evolution API: instâncias, QR, status e envio."""

    def __init__(
        self,
        settings: Settings | None = None,
        cache: CapabilityCache | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.s = settings or di[Settings]
        self.cache = cache or di[CapabilityCache]
        self.transport = transport
        self.base_url = self.s.evolution_base_url.rstrip("/")
        self._version: str | None = self.s.evolution_api_version

    # --- HTTP ---
    def _headers(self) -> Dict[str, str]:
        if self.s.evolution_auth_scheme.lower() == "bearer":
            return {"Authorization": f"Bearer {self.s.evolution_api_key}"}
        return {"apikey": self.s.evolution_api_key}

    def _send(self, method: str, path: str, json: Dict[str, Any] | None = None) -> httpx.Response:
        started = time.perf_counter()
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.s.http_timeout_s,
                              transport=self.transport, headers=self._headers()) as cli:
                r = cli.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path}: {exc}") from exc
        log.info("evolution_call", method=method, path=path, status=r.status_code,
                 elapsed_ms=int((time.perf_counter() - started) * 1000))
        return r

    def provider_version(self) -> str:
        """Versão informada em `GET /` (uma vez por cliente); `unknown` se indisponível."""
        if self._version is None:
            version = "unknown"
            try:
                r = self._send("GET", "/")
                if r.status_code // 100 == 2:
                    version = str((r.json() or {}).get("version") or "unknown")
            except (TransportError, ValueError) as exc:
                log.warning("evolution_version_detect_failed", error=str(exc))
            self._version = version
        return self._version

    def _negotiate(self, op: str, args: Dict[str, Any]) -> Tuple[Candidate, httpx.Response]:
        """Tenta os candidatos de `op` em ordem (o do cache primeiro) e devolve o vencedor."""
        key = (self.base_url, self.provider_version(), op)
        candidates: List[Candidate] = list(CANDIDATES[op])
        cached = self.cache.get(key)
        if cached:
            candidates.sort(key=lambda c: c.name != cached)
        last: httpx.Response | None = None
        for cand in candidates:
            path = cand.path.format(instance=args.get("instance", ""))
            body = cand.body(args) if cand.body else None
            r = self._send(cand.method, path, json=body)
            if r.status_code // 100 == 2:
                if cached != cand.name:
                    self.cache.set(key, cand.name)
                    log.info("evolution_capability_selected", op=op, candidate=cand.name, version=key[1])
                return cand, r
            if r.status_code >= 500:
                raise RemoteApiError(f"{op} returned {r.status_code}", status_code=r.status_code, transient=True)
            if r.status_code in (401, 403):
                raise RemoteApiError(f"{op} unauthorized", status_code=r.status_code, code="UNAUTHORIZED")
            if is_shape_rejection(op, r):
                if cand.name == cached:
                    self.cache.invalidate(key)
                    cached = None
                last = r
                continue
            raise RemoteApiError(f"{op} returned {r.status_code}", status_code=r.status_code)
        detail = last.text[:300] if last is not None else ""
        raise RemoteApiError(f"no endpoint accepted {op}: {detail}",
                             status_code=last.status_code if last is not None else None, code="NO_CAPABILITY")

    @staticmethod
    def _json(r: httpx.Response) -> Any:
        try:
            return r.json()
        except ValueError:
            return {}

    # --- Instâncias ---
    def create_instance(self, instance: str, webhook_url: str | None = None) -> QrDTO:
        _, r = self._negotiate("create", {"instance": instance, "integration": self.s.evolution_integration,
                                          "webhook_url": webhook_url})
        body = self._json(r)
        log.info("evolution_instance_created", instance=instance)
        return QrDTO(base64=normalize_qr(body.get("qrcode") if isinstance(body, dict) else None),
                     pairing_code=_find(body, "pairingCode"))

    def connect(self, instance: str) -> QrDTO:
        _, r = self._negotiate("connect", {"instance": instance})
        body = self._json(r)
        return QrDTO(base64=normalize_qr(body), pairing_code=_find(body, "pairingCode"))

    def fetch_qr(self, instance: str) -> QrDTO:
        _, r = self._negotiate("qr", {"instance": instance})
        body = self._json(r)
        return QrDTO(base64=normalize_qr(body), pairing_code=_find(body, "pairingCode"))

    def connection_state(self, instance: str) -> StatusDTO:
        _, r = self._negotiate("status", {"instance": instance})
        body = self._json(r)
        raw_state = _find(body, "state", "connectionStatus", "status")
        if raw_state is None:
            raise RemoteApiError(f"status payload without state for {instance}", code="MALFORMED")
        return StatusDTO(state=normalize_state(raw_state), raw=body if isinstance(body, dict) else {"data": body})

    def delete_instance(self, instance: str) -> None:
        self._negotiate("delete", {"instance": instance})
        log.info("evolution_instance_deleted", instance=instance)

    # --- Mensagens ---
    def send_message(self, msg: WaOutboundMessageDTO) -> EntregaDTO:
        """Envia texto (ou mídia com legenda) ao número do contato."""
        op = "send_media" if msg.media_url else "send_text"
        args = {"instance": msg.instance, "number": phone_to_number(msg.number), "text": msg.text,
                "media_url": msg.media_url}
        _, r = self._negotiate(op, args)
        body = self._json(r)
        key = body.get("key") if isinstance(body, dict) else None
        provider_id = (key or {}).get("id") if isinstance(key, dict) else _find(body, "messageId", "id")
        return EntregaDTO(ok=True, provider_message_id=str(provider_id) if provider_id else None)
