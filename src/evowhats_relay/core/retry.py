"""RetryScheduler: backoff exponencial com jitter para chamadas ao CRM e à Evolution."""
from __future__ import annotations
import secrets
import time
from typing import Callable, TypeVar
from kink import di
from .settings import Settings
from .errors import TransportError, RemoteApiError
from .logging import get_logger

log = get_logger()
T = TypeVar("T")


def compute_backoff(attempt: int, base: float, max_backoff: float) -> float:
    """Atraso antes da próxima tentativa: base * 2^(attempt-1), limitado, + até 25% de jitter."""
    backoff = min(base * (2 ** max(attempt - 1, 0)), max_backoff)
    jitter = backoff * (secrets.randbelow(2500) / 10000)
    return backoff + jitter


def is_retryable(exc: Exception) -> bool:
    """Só falhas de transporte e erros remotos marcados como transitórios."""
    if isinstance(exc, TransportError):
        return True
    return isinstance(exc, RemoteApiError) and exc.transient


class RetryScheduler:
    """Executa uma chamada com até N tentativas.

    Envio de mensagem não é idempotente nas APIs remotas: um timeout após sucesso
    real pode gerar entrega duplicada na nova tentativa.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay_s: float | None = None,
        max_delay_s: float | None = None,
        sleep: Callable[[float], None] | None = None,
        settings: Settings | None = None,
    ):
        s = settings or di[Settings]
        self.max_attempts = max_attempts if max_attempts is not None else s.retry_max_attempts
        self.base_delay_s = base_delay_s if base_delay_s is not None else s.retry_base_delay_s
        self.max_delay_s = max_delay_s if max_delay_s is not None else s.retry_max_delay_s
        self.sleep = sleep or time.sleep
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def run(self, fn: Callable[[], T], *, op: str = "call") -> T:
        """Chama `fn` até obter sucesso; relança a última falha ao esgotar as tentativas."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if not is_retryable(exc) or attempt >= self.max_attempts:
                    log.warning("retry_exhausted" if is_retryable(exc) else "retry_aborted",
                                op=op, attempt=attempt, error=str(exc), error_type=type(exc).__name__)
                    raise
                delay = compute_backoff(attempt, self.base_delay_s, self.max_delay_s)
                log.info("retry_scheduled", op=op, attempt=attempt, delay_s=round(delay, 3), error=str(exc))
                self.sleep(delay)
        raise RuntimeError("unreachable")
