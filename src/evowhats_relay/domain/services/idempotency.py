"""IdempotencyGuard: detecta ids externos de mensagem já processados."""
from __future__ import annotations
from ...core.logging import get_logger
from ...repo import repo

log = get_logger()


class IdempotencyGuard:
    """Checagem prévia pelo id externo (WhatsApp ou Bitrix).

    Sem id externo a mensagem é sempre processada (dedup best-effort).
    A garantia final é o índice único em messages, que transforma corrida em DuplicateMessage.
    """

    def should_process(self, external_id: str | None, source: str = "wa") -> bool:
        if not external_id:
            log.info("idempotency_skipped", source=source, reason="no_external_id")
            return True
        if source == "wa":
            seen = repo.message_exists(wa_message_id=external_id)
        else:
            seen = repo.message_exists(crm_message_id=external_id)
        if seen:
            log.info("idempotency_hit", source=source, external_id=external_id)
        return not seen
