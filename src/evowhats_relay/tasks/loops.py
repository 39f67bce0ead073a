"""Loops de fundo canceláveis (polling de status, refresh de token) e seu registro.

Nada de mapas globais de conexões: o LoopRegistry é injetado via DI e cada loop
tem ciclo de vida explícito (register/unregister/lookup/stop_all).
"""
from __future__ import annotations
import threading
import time
from typing import Callable, Dict, Hashable, List, Tuple
from ..core.logging import get_logger, set_trace_id

log = get_logger()

LoopKey = Tuple[str, Hashable, str]  # (tenant_id, recurso, tipo)


class PeriodicLoop(threading.Thread):
    """Executa `fn` a cada `interval_s` até `fn` retornar True, `stop()` ou estourar `timeout_s`.

    `result` ao final: "done" | "stopped" | "timeout" | "error".
    """

    def __init__(self, name: str, fn: Callable[[], bool], interval_s: float, timeout_s: float | None = None,
                 on_exit: Callable[["PeriodicLoop"], None] | None = None):
        super().__init__(name=name, daemon=True)
        self.fn = fn
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.on_exit = on_exit
        self.result: str | None = None
        self.iterations = 0
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        set_trace_id(f"loop-{self.name}")
        deadline = time.monotonic() + self.timeout_s if self.timeout_s is not None else None
        try:
            while not self._stop_event.is_set():
                self.iterations += 1
                if self.fn():
                    self.result = "done"
                    return
                if deadline is not None and time.monotonic() >= deadline:
                    self.result = "timeout"
                    log.info("loop_timeout", loop=self.name, iterations=self.iterations)
                    return
                wait = self.interval_s
                if deadline is not None:
                    wait = max(0.0, min(wait, deadline - time.monotonic()))
                self._stop_event.wait(wait)
            self.result = "stopped"
        except Exception as exc:
            self.result = "error"
            log.error("loop_crashed", loop=self.name, error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            if self.on_exit:
                self.on_exit(self)


class LoopRegistry:
    """Registro de loops ativos por (tenant, recurso, tipo)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._loops: Dict[LoopKey, PeriodicLoop] = {}

    def register(self, key: LoopKey, loop: PeriodicLoop, start: bool = True) -> PeriodicLoop:
        """Registra (substituindo e parando um loop anterior com a mesma chave) e inicia."""
        with self._lock:
            previous = self._loops.get(key)
            self._loops[key] = loop
        if previous is not None and previous is not loop:
            previous.stop()
        prior_exit = loop.on_exit

        def _on_exit(lp: PeriodicLoop) -> None:
            if prior_exit:
                prior_exit(lp)
            self._forget(key, lp)

        loop.on_exit = _on_exit
        if start:
            loop.start()
        log.info("loop_registered", key=list(map(str, key)), loop=loop.name)
        return loop

    def _forget(self, key: LoopKey, loop: PeriodicLoop) -> None:
        with self._lock:
            if self._loops.get(key) is loop:
                del self._loops[key]

    def unregister(self, key: LoopKey) -> PeriodicLoop | None:
        """Remove e para o loop da chave, se houver."""
        with self._lock:
            loop = self._loops.pop(key, None)
        if loop is not None:
            loop.stop()
            log.info("loop_unregistered", key=list(map(str, key)), loop=loop.name)
        return loop

    def lookup(self, key: LoopKey) -> PeriodicLoop | None:
        with self._lock:
            return self._loops.get(key)

    def keys(self) -> List[LoopKey]:
        with self._lock:
            return list(self._loops)

    def stop_all(self, join_timeout_s: float = 2.0) -> int:
        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
        for lp in loops:
            lp.stop()
        for lp in loops:
            if lp.is_alive():
                lp.join(join_timeout_s)
        return len(loops)
