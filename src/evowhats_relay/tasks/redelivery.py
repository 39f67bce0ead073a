"""Varredura de backlog: reencaminha ao Bitrix24 mensagens de entrada persistidas e não entregues."""
from __future__ import annotations
from kink import di
from ..core.logging import get_logger
from ..core.settings import Settings
from ..domain.services.inbound_relay import InboundRelay
from ..repo import repo

log = get_logger()

def redeliver_once(relay: InboundRelay | None = None, settings: Settings | None = None) -> int:
    """Reencaminha até `redelivery_batch_size` mensagens `pending`/`failed`. Retorna quantas foram entregues."""
    s = settings or di[Settings]
    relay = relay or di[InboundRelay]
    sent = 0
    for msg in repo.list_redeliverable(limit=s.redelivery_batch_size, max_attempts=s.redelivery_max_attempts):
        res = relay.forward(msg.id)
        if res.status == "processed":
            sent += 1
            repo.log_event(msg.tenant_id, msg.conversation_id, "redelivery_sent", {"message_id": msg.id})
        elif res.status == "forward_failed":
            current = repo.get_message(msg.id)
            if current is not None and current.attempts >= s.redelivery_max_attempts:
                repo.log_event(msg.tenant_id, msg.conversation_id, "redelivery_dead_letter",
                               {"message_id": msg.id, "attempts": current.attempts, "error": current.last_error})
                log.warning("redelivery_dead_letter", message_id=msg.id, attempts=current.attempts)
    log.info("redelivery_sweep", sent=sent)
    return sent
