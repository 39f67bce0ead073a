"""Cliente REST do Bitrix24 (Linhas Abertas / imconnector).

Toda chamada passa pelo TokenRefresher antes e repete uma única vez após refresh
forçado quando o Bitrix rejeita o token.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List
import time
import httpx
from kink import di
from ...core.db import utcnow
from ...core.errors import AuthExpired, TransportError, RemoteApiError
from ...core.logging import get_logger
from ...core.settings import Settings
from ...domain.services.token_refresher import TokenRefresher
from ...ports.interfaces import CrmInboundMessageDTO, EntregaDTO

log = get_logger()

DEFAULT_EVENTS = (
    "OnImOpenLinesMessageAdd",
    "OnImMessageAdd",
    "OnImOpenLinesSessionClose",
    "OnImOpenLinesSessionFinish",
    "OnImOpenLinesSessionTransfer",
    "OnImOpenLinesOperatorAssign",
    "OnImOpenLinesMessageSend",
)

AUTH_ERROR_CODES = {"expired_token", "invalid_token", "no_auth_found", "wrong_auth_type", "invalid_grant"}
TRANSIENT_ERROR_CODES = {"query_limit_exceeded", "internal_server_error", "operation_time_limit"}


def _is_auth_error(status_code: int, error: str | None) -> bool:
    if status_code == 401:
        return True
    e = (error or "").lower()
    return e in AUTH_ERROR_CODES or ("token" in e and ("expired" in e or "invalid" in e))


def _find_key(node: Any, *names: str) -> Any:
    """Busca em profundidade a primeira chave (case-insensitive) dentre `names`."""
    wanted = {n.lower() for n in names}
    stack = [node]
    while stack:
        cur = stack.pop(0)
        if isinstance(cur, dict):
            for k, v in cur.items():
                if str(k).lower() in wanted and v not in (None, "", [], {}):
                    return v
            stack.extend(cur.values())
        elif isinstance(cur, list):
            stack.extend(cur)
    return None


class BitrixClient:
    """Wrapper tipado dos métodos REST consumidos pelo relay."""

    def __init__(
        self,
        settings: Settings | None = None,
        refresher: TokenRefresher | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.s = settings or di[Settings]
        self.refresher = refresher or di[TokenRefresher]
        self.transport = transport
        self.clock = clock or utcnow

    # --- Núcleo ---
    def _post(self, credential, method: str, params: Dict[str, Any]) -> Any:
        url = f"{credential.portal.rstrip('/')}/rest/{method}.json"
        started = time.perf_counter()
        try:
            with httpx.Client(timeout=self.s.http_timeout_s, transport=self.transport) as cli:
                r = cli.post(url, params={"auth": credential.access_token}, json=params or {})
        except httpx.HTTPError as exc:
            raise TransportError(f"{method}: {exc}") from exc

        body: Dict[str, Any] = {}
        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {"raw": r.text[:500]}
        if not isinstance(body, dict):
            body = {"result": body}
        error = body.get("error")
        log.info("crm_call", method=method, status=r.status_code, error=error,
                 elapsed_ms=int((time.perf_counter() - started) * 1000))

        if _is_auth_error(r.status_code, error):
            raise AuthExpired(f"{method}: {error or r.status_code}")
        if r.status_code >= 500 or (error and str(error).lower() in TRANSIENT_ERROR_CODES):
            raise RemoteApiError(body.get("error_description") or f"{method} returned {r.status_code}",
                                 status_code=r.status_code, code=error, transient=True)
        if r.status_code // 100 != 2 or error:
            raise RemoteApiError(body.get("error_description") or str(error or r.status_code),
                                 status_code=r.status_code, code=error)
        return body.get("result")

    def call(self, credential, method: str, params: Dict[str, Any] | None = None) -> Any:
        """Executa `method` com token fresco; em rejeição de auth faz refresh forçado e repete uma vez."""
        outcome = self.refresher.ensure_fresh(credential)
        cred = outcome.credential
        if outcome.error and cred.expires_at is not None and cred.expires_at <= self.clock():
            # Nunca chamar a API com token sabidamente vencido.
            raise AuthExpired(f"{method}: token expired and refresh failed ({outcome.error})")

        for attempt in (1, 2):
            try:
                return self._post(cred, method, params or {})
            except AuthExpired:
                if attempt == 2:
                    raise
                log.info("crm_auth_retry", method=method, credential_id=cred.id)
                outcome = self.refresher.ensure_fresh(cred, force=True)
                if outcome.error:
                    raise AuthExpired(f"{method}: refresh failed ({outcome.error})") from outcome.error
                cred = outcome.credential
        raise RuntimeError("unreachable")

    # --- Conector ---
    def register_connector(self, credential, *, icon_base64: str, placement_handler: str | None = None,
                           name: str | None = None) -> Any:
        params: Dict[str, Any] = {
            "ID": self.s.crm_connector_id,
            "NAME": name or self.s.crm_connector_name,
            "ICON": {"DATA_IMAGE": icon_base64},
            "CHAT_GROUP": "N",
        }
        if placement_handler:
            params["PLACEMENT_HANDLER"] = placement_handler
        return self.call(credential, "imconnector.register", params)

    def publish_connector_data(self, credential, line_id: str, data: Dict[str, Any]) -> Any:
        return self.call(credential, "imconnector.connector.data.set", {
            "CONNECTOR": self.s.crm_connector_id, "LINE": str(line_id), "DATA": data,
        })

    def activate_line(self, credential, line_id: str) -> Any:
        return self.call(credential, "imconnector.activate", {
            "CONNECTOR": self.s.crm_connector_id, "LINE": str(line_id), "ACTIVE": 1,
        })

    def deactivate_line(self, credential, line_id: str) -> Any:
        return self.call(credential, "imconnector.deactivate", {
            "CONNECTOR": self.s.crm_connector_id, "LINE": str(line_id),
        })

    # --- Linhas ---
    def list_lines(self, credential) -> List[Dict[str, Any]]:
        result = self.call(credential, "imopenlines.config.list.get", {})
        return list(result or [])

    def create_line(self, credential, name: str) -> str:
        result = self.call(credential, "imopenlines.config.add", {
            "PARAMS": {"LINE_NAME": name, "CRM": "Y", "CRM_CREATE": "lead"},
        })
        return str(result)

    # --- Mensagens ---
    def send_message(self, credential, msg: CrmInboundMessageDTO) -> EntregaDTO:
        """Entrega uma mensagem do cliente (WhatsApp) na Linha Aberta via imconnector.send.messages."""
        message: Dict[str, Any] = {"id": msg.wa_message_id or "", "date": int(time.time()), "text": msg.text}
        if msg.media_url:
            message["files"] = [{"url": msg.media_url}]
        payload = {
            "CONNECTOR": self.s.crm_connector_id,
            "LINE": str(msg.line_id),
            "MESSAGES": [{
                "user": {"id": msg.user_id, "name": msg.user_name or msg.user_id, "phone": msg.user_id},
                "message": message,
                "chat": {"id": msg.chat_id or msg.user_id},
            }],
        }
        result = self.call(credential, "imconnector.send.messages", payload)
        if isinstance(result, dict) and result.get("SUCCESS") is False:
            raise RemoteApiError(str(result.get("ERRORS") or "send.messages rejected"), code="SEND_REJECTED")
        chat_id = _find_key(result, "CHAT_ID", "chat_id")
        message_ids = _find_key(result, "message")
        if isinstance(message_ids, list):
            message_ids = message_ids[0] if message_ids else None
        return EntregaDTO(
            ok=True,
            chat_id=str(chat_id) if chat_id is not None else None,
            provider_message_id=str(message_ids) if isinstance(message_ids, (str, int)) else None,
        )

    # --- Eventos ---
    def bind_events(self, credential, handler_url: str | None = None,
                    events: Iterable[str] = DEFAULT_EVENTS) -> Dict[str, str]:
        """Re-vincula os eventos ao handler (unbind + bind). Retorna resultado por evento."""
        handler = handler_url or self.s.crm_events_handler_url
        results: Dict[str, str] = {}
        for ev in events:
            try:
                self.call(credential, "event.unbind", {"event": ev, "handler": handler})
            except RemoteApiError:
                pass  # ainda não vinculado
            try:
                self.call(credential, "event.bind", {"event": ev, "handler": handler})
                results[ev] = "ok"
            except RemoteApiError as exc:
                results[ev] = exc.code or str(exc)
        log.info("crm_events_bound", handler=handler, results=results)
        return results

    def unbind_events(self, credential, handler_url: str | None = None,
                      events: Iterable[str] = DEFAULT_EVENTS) -> Dict[str, str]:
        handler = handler_url or self.s.crm_events_handler_url
        results: Dict[str, str] = {}
        for ev in events:
            try:
                self.call(credential, "event.unbind", {"event": ev, "handler": handler})
                results[ev] = "ok"
            except RemoteApiError as exc:
                results[ev] = exc.code or str(exc)
        return results
