"""OutboundRelay (Bitrix24 → WhatsApp): eventos das Linhas Abertas até o contato na Evolution."""
from __future__ import annotations
from kink import di
from ...core.errors import DuplicateMessage, InvalidSignature, RelayError, UnparsablePayload
from ...core.logging import get_logger
from ...core.payloads import decode_body
from ...core.retry import RetryScheduler
from ...core.settings import Settings
from ...core.signature import SignatureValidator
from ...connectors.crm.events import (
    CrmMessageEvent, CrmSessionClosedEvent, CrmSessionTransferredEvent, decode_crm_event, peek_routing,
)
from ...connectors.whatsapp.evolution_adapter import EvolutionAdapter
from ...ports.interfaces import WaOutboundMessageDTO
from ...repo import repo
from ...repo.credentials import CredentialStore
from ...repo.models import PENDING, SENT, FAILED, NOT_FORWARDED
from .binding_registry import BindingRegistry
from .idempotency import IdempotencyGuard
from .inbound_relay import RelayResult

log = get_logger()
PROVIDER = "bitrix"


class OutboundRelay:
    """Processa eventos do Bitrix24: respostas de agente, encerramento e transferência de sessão."""

    def __init__(
        self,
        wa: EvolutionAdapter | None = None,
        credentials: CredentialStore | None = None,
        bindings: BindingRegistry | None = None,
        guard: IdempotencyGuard | None = None,
        retry: RetryScheduler | None = None,
        validator: SignatureValidator | None = None,
        settings: Settings | None = None,
    ):
        self.s = settings or di[Settings]
        self.wa = wa or di[EvolutionAdapter]
        self.credentials = credentials or di[CredentialStore]
        self.bindings = bindings or di[BindingRegistry]
        self.guard = guard or di[IdempotencyGuard]
        self.retry = retry or di[RetryScheduler]
        self.validator = validator or di[SignatureValidator]

    def _resolve_tenant(self, domain: str | None, chat_id: str | None) -> str | None:
        if domain:
            cred = self.credentials.find_active_by_portal(domain)
            if cred:
                return cred.tenant_id
        if chat_id:
            conv = repo.find_conversation_by_chat(chat_id)
            if conv:
                return conv.tenant_id
        return None

    def handle(self, raw_body: bytes, content_type: str | None, signature: str | None) -> RelayResult:
        try:
            payload = decode_body(raw_body, content_type)
        except UnparsablePayload as exc:
            log.warning("webhook_unparsable", provider=PROVIDER, error=str(exc))
            return RelayResult(status="unparsable", http_status=400, detail=str(exc))

        event_name = str(payload.get("event") or payload.get("EVENT") or "") or None
        domain, chat_id = peek_routing(payload)
        tenant_id = self._resolve_tenant(domain, chat_id)
        if tenant_id is None:
            log.warning("webhook_unknown_tenant", provider=PROVIDER, domain=domain, chat_id=chat_id)
            repo.log_webhook(PROVIDER, payload, verdict="not_found", event=event_name)
            return RelayResult(status="not_found", detail="tenant not resolved")

        tenant = repo.get_tenant(tenant_id)
        secret = (tenant.webhook_secret if tenant else None) or self.s.crm_webhook_secret
        try:
            self.validator.require(raw_body, signature, secret)
        except InvalidSignature as exc:
            repo.log_webhook(PROVIDER, payload, verdict="invalid_signature", valid_signature=False,
                             tenant_id=tenant_id, event=event_name)
            log.warning("webhook_invalid_signature", provider=PROVIDER, tenant_id=tenant_id)
            return RelayResult(status="invalid_signature", http_status=403, detail=str(exc))

        try:
            event = decode_crm_event(payload)
        except UnparsablePayload as exc:
            repo.log_webhook(PROVIDER, payload, verdict="unparsable", valid_signature=True,
                             tenant_id=tenant_id, event=event_name)
            log.warning("webhook_unparsable", provider=PROVIDER, tenant_id=tenant_id, error=str(exc))
            return RelayResult(status="ignored", detail=str(exc))

        repo.log_webhook(PROVIDER, payload, verdict="accepted", valid_signature=True,
                         tenant_id=tenant_id, event=event.event)

        conv = repo.find_conversation_by_chat(event.chat_id, tenant_id=tenant_id)
        if conv is None:
            log.info("crm_event_unknown_chat", tenant_id=tenant_id, chat_id=event.chat_id, crm_event=event.event)
            return RelayResult(status="not_found", detail=f"conversation for chat {event.chat_id}")

        if isinstance(event, CrmSessionClosedEvent):
            repo.close_conversation(conv.id)
            repo.log_event(tenant_id, conv.id, "session_closed", {"chat_id": event.chat_id})
            return RelayResult(status="processed", conversation_id=conv.id, detail="closed")
        if isinstance(event, CrmSessionTransferredEvent):
            if event.agent_id:
                repo.assign_conversation(conv.id, event.agent_id)
                repo.log_event(tenant_id, conv.id, "session_transferred", {"agent_id": event.agent_id})
            return RelayResult(status="processed", conversation_id=conv.id, detail="transferred")
        return self._relay_message(tenant_id, conv, event)

    def _relay_message(self, tenant_id: str, conv, event: CrmMessageEvent) -> RelayResult:
        if event.is_system or event.from_connector:
            return RelayResult(status="ignored", conversation_id=conv.id, detail="system_or_echo")
        if not event.text and not event.files:
            return RelayResult(status="ignored", conversation_id=conv.id, detail="empty")
        if not self.guard.should_process(event.message_id, source="crm"):
            return RelayResult(status="duplicate", conversation_id=conv.id, detail=event.message_id)

        line_id = self.bindings.line_for_instance(conv.instance_id)
        media_url = event.files[0] if event.files else None
        try:
            msg = repo.insert_message(
                tenant_id=tenant_id,
                conversation_id=conv.id,
                direction="out",
                content=event.text,
                media_url=media_url,
                crm_message_id=event.message_id,
                delivery_status=PENDING if line_id else NOT_FORWARDED,
            )
        except DuplicateMessage:
            return RelayResult(status="duplicate", conversation_id=conv.id, detail=event.message_id)
        repo.touch_conversation(conv.id)

        if not line_id:
            log.info("relay_not_forwarded", direction="out", message_id=msg.id, reason="no_binding")
            repo.log_event(tenant_id, conv.id, "relay_not_forwarded", {"message_id": msg.id, "reason": "no_binding"})
            return RelayResult(status="stored_not_forwarded", message_id=msg.id, conversation_id=conv.id)

        inst = repo.get_instance(conv.instance_id)
        contact = repo.get_contact(conv.contact_id)
        dto = WaOutboundMessageDTO(instance=inst.label, number=contact.phone, text=event.text, media_url=media_url)
        attempts = 0

        def send():
            nonlocal attempts
            attempts += 1
            return self.wa.send_message(dto)

        try:
            result = self.retry.run(send, op="wa_send_message")
        except RelayError as exc:
            error = f"{type(exc).__name__}: {exc}"
            repo.update_message(msg.id, delivery_status=FAILED, attempts=attempts, last_error=error)
            repo.log_event(tenant_id, conv.id, "relay_failed",
                           {"direction": "out", "message_id": msg.id, "attempts": attempts, "error": error})
            log.warning("relay_failed", direction="out", message_id=msg.id, error=error)
            return RelayResult(status="forward_failed", message_id=msg.id, conversation_id=conv.id, detail=error)

        repo.update_message(msg.id, delivery_status=SENT, attempts=attempts, wa_message_id=result.provider_message_id)
        log.info("relay_forwarded", direction="out", message_id=msg.id, instance=inst.label)
        return RelayResult(status="processed", message_id=msg.id, conversation_id=conv.id)
