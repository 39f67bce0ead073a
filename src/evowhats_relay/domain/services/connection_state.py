"""Máquina de estados da conexão WhatsApp (pareamento por QR) por instância.

Estados: PENDING_QR → CONNECTED → DISCONNECTED, com ERROR para falhas de status.
Sinais de qualquer transporte (polling, webhook da Evolution) entram pelo mesmo
canal e são consumidos aqui.
"""
from __future__ import annotations
import queue
import threading
from dataclasses import dataclass
from typing import Dict, FrozenSet, List
from kink import di
from ...core.db import utcnow
from ...core.errors import IllegalTransition, NotFound, RelayError
from ...core.logging import get_logger
from ...core.retry import RetryScheduler
from ...connectors.whatsapp.evolution_adapter import EvolutionAdapter
from ...repo import repo
from ...repo.models import Instance, PENDING_QR, CONNECTED, DISCONNECTED, ERROR

log = get_logger()

LEGAL_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING_QR: frozenset({CONNECTED, ERROR}),
    CONNECTED: frozenset({DISCONNECTED}),
    DISCONNECTED: frozenset({PENDING_QR, ERROR}),
    ERROR: frozenset({PENDING_QR}),
}
STATES = tuple(LEGAL_TRANSITIONS)
# Estados em que o polling deixa de fazer sentido.
POLL_TERMINAL = frozenset({CONNECTED, DISCONNECTED, ERROR})


def is_legal(current: str, target: str) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class StateSignal:
    """Mensagem no canal de estado.

    kind: status (state=open|close|connecting) | status_failed (error) | qr (qr) | reconnect
    """
    instance_id: int
    kind: str
    state: str | None = None
    qr: str | None = None
    error: str | None = None
    source: str = "poll"


class SignalChannel:
    """Canal interno (fila) entre transportes e a máquina de estados."""

    def __init__(self):
        self._q: "queue.Queue[StateSignal]" = queue.Queue()

    def publish(self, signal: StateSignal) -> None:
        self._q.put(signal)

    def drain(self) -> List[StateSignal]:
        items: List[StateSignal] = []
        while True:
            try:
                items.append(self._q.get_nowait())
            except queue.Empty:
                return items

    def __len__(self) -> int:
        return self._q.qsize()


class ConnectionStateMachine:
    """Aplica transições legais e seus efeitos colaterais sobre Instance."""

    def __init__(
        self,
        wa: EvolutionAdapter | None = None,
        channel: SignalChannel | None = None,
        retry: RetryScheduler | None = None,
    ):
        self.wa = wa or di[EvolutionAdapter]
        self.channel = channel or di[SignalChannel]
        self.retry = retry or di[RetryScheduler]
        self._lock = threading.Lock()

    # --- Núcleo ---
    def _load(self, instance_id: int) -> Instance:
        inst = repo.get_instance(instance_id)
        if inst is None:
            raise NotFound(f"instance {instance_id}")
        return inst

    def _fetch_qr(self, inst: Instance) -> tuple[str | None, str | None]:
        try:
            qr = self.retry.run(lambda: self.wa.fetch_qr(inst.label), op="fetch_qr")
            return qr.base64, None
        except RelayError as exc:
            log.warning("qr_fetch_failed", instance=inst.label, error=str(exc))
            return None, str(exc)

    def transition(self, instance_id: int, target: str, *, qr: str | None = None, error: str | None = None) -> Instance:
        """Leva a instância a `target`. Transição proibida levanta IllegalTransition.

        Entrar em CONNECTED limpa o QR; entrar em PENDING_QR busca um QR novo
        (a menos que `qr` já venha informado).
        """
        inst = self._load(instance_id)
        current = inst.status
        if current == target:
            return inst
        if not is_legal(current, target):
            raise IllegalTransition(current, target)

        fields: dict = {"status": target, "last_sync_at": utcnow()}
        if target == CONNECTED:
            fields.update(qr_payload=None, last_error=None)
        elif target == PENDING_QR:
            fetched_error = None
            if qr is None:
                qr, fetched_error = self._fetch_qr(inst)
            fields.update(qr_payload=qr, last_error=fetched_error)
        elif target == ERROR:
            fields["last_error"] = error or "status check failed"
        updated = repo.update_instance_if_status(instance_id, current, **fields)
        if updated is None:
            # Outro worker mudou o status entre a leitura e a escrita.
            latest = self._load(instance_id)
            log.info("state_transition_conflict", instance=inst.label, expected=current, found=latest.status,
                     to_state=target)
            if latest.status == target:
                return latest
            raise IllegalTransition(latest.status, target)
        log.info("state_transition", instance=inst.label, instance_id=instance_id, from_state=current, to_state=target)
        repo.log_event(inst.tenant_id, None, "state_transition",
                       {"instance_id": instance_id, "from": current, "to": target, "error": fields.get("last_error")})
        return updated

    def refresh_qr(self, instance_id: int) -> Instance:
        """Busca um QR novo para instância ainda em PENDING_QR (QR anterior expirou)."""
        inst = self._load(instance_id)
        if inst.status != PENDING_QR:
            return inst
        qr, err = self._fetch_qr(inst)
        updated = repo.update_instance_if_status(instance_id, PENDING_QR, qr_payload=qr or inst.qr_payload,
                                                 last_error=err, last_sync_at=utcnow())
        return updated or self._load(instance_id)

    def apply(self, signal: StateSignal) -> Instance:
        """Traduz um sinal em transição. Sinais do provedor incompatíveis com o estado atual são ignorados."""
        inst = self._load(signal.instance_id)
        current = inst.status

        if signal.kind == "reconnect":
            return self.transition(inst.id, PENDING_QR)

        if signal.kind == "qr":
            if current == PENDING_QR and signal.qr:
                updated = repo.update_instance_if_status(inst.id, PENDING_QR, qr_payload=signal.qr,
                                                         last_sync_at=utcnow())
                return updated or self._load(inst.id)
            return inst

        if signal.kind == "status_failed":
            if current == CONNECTED:
                # Conexão estabelecida não cai para ERROR por falha de consulta.
                return repo.update_instance(inst.id, last_error=signal.error, last_sync_at=utcnow())
            if current == ERROR:
                return repo.update_instance(inst.id, last_error=signal.error, last_sync_at=utcnow())
            return self.transition(inst.id, ERROR, error=signal.error)

        if signal.kind == "status":
            target = {"open": CONNECTED, "close": DISCONNECTED}.get(signal.state or "")
            if target is None or target == current:
                return repo.update_instance(inst.id, last_sync_at=utcnow())
            if not is_legal(current, target):
                log.info("state_signal_ignored", instance=inst.label, state=current, signal=signal.state,
                         source=signal.source)
                return inst
            return self.transition(inst.id, target)

        log.warning("state_signal_unknown", instance_id=inst.id, kind=signal.kind)
        return inst

    # --- Canal ---
    def publish(self, signal: StateSignal) -> None:
        self.channel.publish(signal)

    def drain(self) -> List[Instance]:
        """Consome todos os sinais pendentes no canal, em ordem."""
        with self._lock:
            results = []
            for signal in self.channel.drain():
                try:
                    results.append(self.apply(signal))
                except NotFound:
                    log.info("state_signal_orphan", instance_id=signal.instance_id, kind=signal.kind)
                except IllegalTransition as exc:
                    log.info("state_signal_stale", instance_id=signal.instance_id, kind=signal.kind, error=str(exc))
            return results

    def feed(self, signal: StateSignal) -> Instance | None:
        """Publica e consome. Retorna o estado resultante da instância do sinal."""
        self.publish(signal)
        self.drain()
        return repo.get_instance(signal.instance_id)

    # --- Polling ---
    def poll_once(self, instance_id: int) -> str:
        """Consulta o status na Evolution, alimenta a máquina e devolve o estado resultante."""
        inst = self._load(instance_id)
        try:
            status = self.retry.run(lambda: self.wa.connection_state(inst.label), op="connection_state")
            signal = StateSignal(instance_id, "status", state=status.state, source="poll")
        except RelayError as exc:
            signal = StateSignal(instance_id, "status_failed", error=str(exc), source="poll")
        result = self.feed(signal)
        return result.status if result else DISCONNECTED
