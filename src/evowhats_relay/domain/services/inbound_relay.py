"""InboundRelay (WhatsApp → Bitrix24): webhook da Evolution até a Linha Aberta vinculada.

Depois de autenticado e registrado, o webhook sempre é confirmado (200): falha de
encaminhamento fica no status da mensagem e em relay_events, nunca volta para a
Evolution (que reenviaria o mesmo evento).
"""
from __future__ import annotations
from typing import Any, Dict
from pydantic import BaseModel
from kink import di
from ...core.errors import DuplicateMessage, InvalidSignature, RelayError, UnparsablePayload
from ...core.logging import get_logger
from ...core.payloads import decode_body
from ...core.retry import RetryScheduler
from ...core.settings import Settings
from ...core.signature import SignatureValidator
from ...connectors.crm.bitrix_client import BitrixClient
from ...connectors.whatsapp.events import (
    WaConnectionEvent, WaIgnoredEvent, WaMessageEvent, WaQrEvent, decode_wa_event, extract_instance_label,
)
from ...connectors.whatsapp.evolution_adapter import normalize_state
from ...ports.interfaces import CrmInboundMessageDTO
from ...repo import repo
from ...repo.credentials import CredentialStore
from ...repo.models import Message, PENDING, SENT, FAILED, NOT_FORWARDED
from .binding_registry import BindingRegistry
from .connection_state import ConnectionStateMachine, StateSignal
from .idempotency import IdempotencyGuard

log = get_logger()
PROVIDER = "evolution"


class RelayResult(BaseModel):
    """Resposta do relay para o handler HTTP."""
    status: str
    http_status: int = 200
    message_id: int | None = None
    conversation_id: int | None = None
    detail: str | None = None

    def body(self) -> Dict[str, Any]:
        return {"ok": self.http_status < 400, **self.model_dump(exclude={"http_status"}, exclude_none=True)}


class InboundRelay:
    """Processa webhooks da Evolution e encaminha mensagens ao Bitrix24."""

    def __init__(
        self,
        crm: BitrixClient | None = None,
        credentials: CredentialStore | None = None,
        bindings: BindingRegistry | None = None,
        guard: IdempotencyGuard | None = None,
        retry: RetryScheduler | None = None,
        validator: SignatureValidator | None = None,
        machine: ConnectionStateMachine | None = None,
        settings: Settings | None = None,
    ):
        self.s = settings or di[Settings]
        self.crm = crm or di[BitrixClient]
        self.credentials = credentials or di[CredentialStore]
        self.bindings = bindings or di[BindingRegistry]
        self.guard = guard or di[IdempotencyGuard]
        self.retry = retry or di[RetryScheduler]
        self.validator = validator or di[SignatureValidator]
        self.machine = machine or di[ConnectionStateMachine]

    def handle(self, raw_body: bytes, content_type: str | None, signature: str | None) -> RelayResult:
        try:
            payload = decode_body(raw_body, content_type)
        except UnparsablePayload as exc:
            log.warning("webhook_unparsable", provider=PROVIDER, error=str(exc))
            return RelayResult(status="unparsable", http_status=400, detail=str(exc))

        label = extract_instance_label(payload)
        event_name = str(payload.get("event") or "") or None
        if not label:
            repo.log_webhook(PROVIDER, payload, verdict="unparsable", event=event_name)
            return RelayResult(status="unparsable", http_status=400, detail="missing instance label")

        inst = repo.find_instance_by_label(label)
        if inst is None:
            log.warning("webhook_unknown_instance", instance=label)
            repo.log_webhook(PROVIDER, payload, verdict="not_found", instance_label=label, event=event_name)
            return RelayResult(status="not_found", detail=f"unknown instance {label}")

        secret = inst.webhook_secret or self.s.evolution_webhook_secret
        try:
            self.validator.require(raw_body, signature, secret)
        except InvalidSignature as exc:
            repo.log_webhook(PROVIDER, payload, verdict="invalid_signature", valid_signature=False,
                             tenant_id=inst.tenant_id, instance_label=label, event=event_name)
            log.warning("webhook_invalid_signature", provider=PROVIDER, instance=label)
            return RelayResult(status="invalid_signature", http_status=403, detail=str(exc))

        try:
            event = decode_wa_event(payload)
        except UnparsablePayload as exc:
            repo.log_webhook(PROVIDER, payload, verdict="unparsable", valid_signature=True,
                             tenant_id=inst.tenant_id, instance_label=label, event=event_name)
            log.warning("webhook_unparsable", provider=PROVIDER, instance=label, error=str(exc))
            return RelayResult(status="ignored", detail=str(exc))

        repo.log_webhook(PROVIDER, payload, verdict="accepted", valid_signature=True,
                         tenant_id=inst.tenant_id, instance_label=label, event=event.event)

        if isinstance(event, WaConnectionEvent):
            updated = self.machine.feed(StateSignal(inst.id, "status", state=normalize_state(event.state),
                                                    source="webhook"))
            return RelayResult(status="state_updated", detail=updated.status if updated else None)
        if isinstance(event, WaQrEvent):
            self.machine.feed(StateSignal(inst.id, "qr", qr=event.qr_base64, source="webhook"))
            return RelayResult(status="state_updated", detail="qr")
        if isinstance(event, WaIgnoredEvent):
            return RelayResult(status="ignored", detail=event.reason)
        return self._relay_message(inst, event)

    def _relay_message(self, inst, event: WaMessageEvent) -> RelayResult:
        if not self.guard.should_process(event.message_id, source="wa"):
            return RelayResult(status="duplicate", detail=event.message_id)

        contact = repo.upsert_contact(inst.tenant_id, event.phone, event.push_name)
        conv, _ = repo.get_or_open_conversation(inst.tenant_id, inst.id, contact.id)
        line_id = self.bindings.line_for_instance(inst.id)
        try:
            msg = repo.insert_message(
                tenant_id=inst.tenant_id,
                conversation_id=conv.id,
                direction="in",
                content=event.text,
                media_url=event.media_url,
                wa_message_id=event.message_id,
                delivery_status=PENDING if line_id else NOT_FORWARDED,
            )
        except DuplicateMessage:
            return RelayResult(status="duplicate", detail=event.message_id)
        repo.touch_conversation(conv.id)

        if not line_id:
            log.info("relay_not_forwarded", instance=inst.label, message_id=msg.id, reason="no_binding")
            repo.log_event(inst.tenant_id, conv.id, "relay_not_forwarded", {"message_id": msg.id, "reason": "no_binding"})
            return RelayResult(status="stored_not_forwarded", message_id=msg.id, conversation_id=conv.id)
        return self.forward(msg.id, line_id=line_id, push_name=event.push_name)

    def forward(self, message_id: int, line_id: str | None = None, push_name: str | None = None) -> RelayResult:
        """Encaminha uma mensagem de entrada já persistida para a linha vinculada.

        Também usado pela varredura de backlog para mensagens `pending`/`failed`.
        """
        msg: Message | None = repo.get_message(message_id)
        if msg is None:
            return RelayResult(status="not_found", detail=f"message {message_id}")
        conv = repo.get_conversation(msg.conversation_id)
        line_id = line_id or self.bindings.line_for_instance(conv.instance_id)
        if not line_id:
            repo.update_message(msg.id, delivery_status=NOT_FORWARDED)
            return RelayResult(status="stored_not_forwarded", message_id=msg.id, conversation_id=conv.id)

        contact = repo.get_contact(conv.contact_id)
        credential = self.credentials.get_active(msg.tenant_id)
        attempts = (msg.attempts or 0) + 1
        if credential is None:
            return self._fail(msg, conv, attempts, "no active CRM credential for tenant")

        dto = CrmInboundMessageDTO(
            line_id=line_id,
            user_id=contact.phone,
            user_name=push_name or contact.push_name,
            text=msg.content,
            wa_message_id=msg.wa_message_id,
            media_url=msg.media_url,
        )
        try:
            result = self.retry.run(lambda: self.crm.send_message(credential, dto), op="crm_send_message")
        except RelayError as exc:
            return self._fail(msg, conv, attempts, f"{type(exc).__name__}: {exc}")

        repo.update_message(msg.id, delivery_status=SENT, attempts=attempts, last_error=None,
                            crm_message_id=result.provider_message_id)
        if result.chat_id:
            repo.set_conversation_chat_id(conv.id, result.chat_id)
        log.info("relay_forwarded", direction="in", message_id=msg.id, line_id=line_id, crm_chat_id=result.chat_id)
        return RelayResult(status="processed", message_id=msg.id, conversation_id=conv.id)

    def _fail(self, msg: Message, conv, attempts: int, error: str) -> RelayResult:
        repo.update_message(msg.id, delivery_status=FAILED, attempts=attempts, last_error=error)
        repo.log_event(msg.tenant_id, conv.id, "relay_failed",
                       {"direction": "in", "message_id": msg.id, "attempts": attempts, "error": error})
        log.warning("relay_failed", direction="in", message_id=msg.id, error=error)
        return RelayResult(status="forward_failed", message_id=msg.id, conversation_id=conv.id, detail=error)
