"""Fluxo de pareamento: cria a instância `evo_line_<linha>`, vincula à linha e acompanha o QR."""
from __future__ import annotations
from kink import di
from ...core.errors import NotFound, RelayError, RemoteApiError
from ...core.logging import get_logger
from ...core.settings import Settings
from ...connectors.whatsapp.evolution_adapter import EvolutionAdapter
from ...repo import repo
from ...repo.models import Instance, PENDING_QR, CONNECTED, DISCONNECTED, ERROR
from ...tasks.loops import LoopRegistry, PeriodicLoop
from .binding_registry import BindingRegistry
from .connection_state import ConnectionStateMachine, POLL_TERMINAL

log = get_logger()


def instance_label(line_id: str) -> str:
    return f"evo_line_{line_id}"


def status_loop_key(inst: Instance) -> tuple:
    return (inst.tenant_id, inst.id, "status")


class PairingService:
    """Orquestra criação, reconexão e remoção de instâncias por Linha Aberta."""

    def __init__(
        self,
        wa: EvolutionAdapter | None = None,
        machine: ConnectionStateMachine | None = None,
        bindings: BindingRegistry | None = None,
        loops: LoopRegistry | None = None,
        settings: Settings | None = None,
    ):
        self.s = settings or di[Settings]
        self.wa = wa or di[EvolutionAdapter]
        self.machine = machine or di[ConnectionStateMachine]
        self.bindings = bindings or di[BindingRegistry]
        self.loops = loops or di[LoopRegistry]

    def start_pairing(self, tenant_id: str, line_id: str, webhook_secret: str | None = None,
                      poll: bool = True) -> Instance:
        """Garante instância + vínculo para a linha e inicia o pareamento (PENDING_QR)."""
        repo.upsert_tenant(tenant_id)
        inst = repo.create_instance(tenant_id, instance_label(line_id), webhook_secret=webhook_secret)
        self.bindings.bind(tenant_id, line_id, inst.id)

        if inst.status == CONNECTED:
            return inst
        if inst.status in (DISCONNECTED, ERROR):
            return self.reconnect(inst.id, poll=poll)

        qr = None
        try:
            created = self.wa.create_instance(inst.label, webhook_url=self.s.evolution_webhook_url or None)
            qr = created.base64
        except RemoteApiError as exc:
            if exc.status_code not in (400, 403, 409):
                raise
            # Já existe na Evolution: segue com connect para obter QR.
            log.info("evolution_instance_exists", instance=inst.label, error=str(exc))
        if qr is None:
            try:
                qr = self.wa.connect(inst.label).base64
            except RelayError as exc:
                log.warning("evolution_connect_failed", instance=inst.label, error=str(exc))
        if qr:
            inst = repo.update_instance(inst.id, qr_payload=qr)
        if poll:
            self.start_status_polling(inst)
        log.info("pairing_started", tenant_id=tenant_id, line_id=line_id, instance=inst.label, has_qr=bool(qr))
        return inst

    def reconnect(self, instance_id: int, poll: bool = True) -> Instance:
        """Reconexão explícita: DISCONNECTED/ERROR → PENDING_QR (busca QR novo)."""
        inst = repo.get_instance(instance_id)
        if inst is None:
            raise NotFound(f"instance {instance_id}")
        if inst.status == PENDING_QR:
            inst = self.machine.refresh_qr(inst.id)
        else:
            inst = self.machine.transition(inst.id, PENDING_QR)
        if poll:
            self.start_status_polling(inst)
        return inst

    def start_status_polling(self, inst: Instance) -> PeriodicLoop:
        """Polling de status com intervalo fixo e duração limitada; para ao atingir estado terminal."""
        def _tick() -> bool:
            return self.machine.poll_once(inst.id) in POLL_TERMINAL

        loop = PeriodicLoop(
            name=f"status-{inst.label}",
            fn=_tick,
            interval_s=self.s.status_poll_interval_s,
            timeout_s=self.s.status_poll_timeout_s,
        )
        return self.loops.register(status_loop_key(inst), loop)

    def stop_status_polling(self, inst: Instance) -> bool:
        return self.loops.unregister(status_loop_key(inst)) is not None

    def delete(self, instance_id: int) -> Instance:
        """Remoção explícita: para loops, apaga na Evolution, desvincula e marca desconectada."""
        inst = repo.get_instance(instance_id)
        if inst is None:
            raise NotFound(f"instance {instance_id}")
        self.stop_status_polling(inst)
        try:
            self.wa.delete_instance(inst.label)
        except RemoteApiError as exc:
            if exc.status_code != 404 and exc.code != "NO_CAPABILITY":
                raise
            log.info("evolution_instance_absent", instance=inst.label)
        self.bindings.unbind_instance(inst.id)
        if inst.status == CONNECTED:
            inst = self.machine.transition(inst.id, DISCONNECTED)
        elif inst.status == PENDING_QR:
            inst = self.machine.transition(inst.id, ERROR, error="instance deleted")
        repo.update_instance(inst.id, qr_payload=None)
        log.info("instance_deleted", instance=inst.label, status=inst.status)
        return repo.get_instance(inst.id)
