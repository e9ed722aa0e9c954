"""
Pool de workers com parada cooperativa
"""

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Callable, List

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    RUNNING = 'running'
    STOPPED = 'stopped'


class WorkerHandle:
    """Um worker em execução e o recurso que ele segura no momento"""

    def __init__(self, ordinal: int):
        self.ordinal = ordinal
        self.state = WorkerState.RUNNING
        self.iterations = 0
        self.failures = 0
        self.cancel_token = threading.Event()
        self.thread = None
        self._resource = None
        self._resource_lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"loadharness-worker-{self.ordinal}"

    @property
    def resource(self):
        return self._resource

    @property
    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    @contextmanager
    def holding(self, resource):
        """Registra o recurso aberto durante uma iteração"""
        with self._resource_lock:
            self._resource = resource
        try:
            yield resource
        finally:
            with self._resource_lock:
                self._resource = None

    def request_stop(self):
        self.cancel_token.set()

    def force_stop(self):
        """Cancela a operação em andamento quando o recurso permite (ex: conexão psycopg2)"""
        with self._resource_lock:
            resource = self._resource
        cancel = getattr(resource, 'cancel', None)
        if cancel is None:
            return False
        try:
            cancel()
        except Exception as e:
            logger.warning(f"Worker {self.ordinal}: falha ao cancelar operação em andamento: {e}")
            return False
        return True


class WorkerPool:
    """
    Conjunto de N workers independentes, cada um chamando a unidade de trabalho em loop

    Falhas de uma iteração nunca derrubam o worker; apenas stop_all() encerra os workers.
    """

    def __init__(self, grace_period: float = 5.0):
        self.grace_period = grace_period
        self.handles: List[WorkerHandle] = []
        self._stop_lock = threading.Lock()
        self._started = False
        self._stopped = False

    def start(self, count: int, unit: Callable) -> List[WorkerHandle]:
        if self._started:
            raise RuntimeError("pool já iniciado")
        if count < 1:
            raise ValueError("count deve ser >= 1")
        self._started = True

        retry_delay = getattr(unit, 'retry_delay', 0.05)
        for ordinal in range(count):
            handle = WorkerHandle(ordinal)
            handle.thread = threading.Thread(
                target=self._worker_loop,
                args=(handle, unit, retry_delay),
                name=handle.name,
                daemon=True,
            )
            self.handles.append(handle)
            handle.thread.start()

        logger.info(f"{count} workers iniciados")
        return list(self.handles)

    def _worker_loop(self, handle: WorkerHandle, unit: Callable, retry_delay: float):
        logger.debug(f"Worker {handle.ordinal} iniciado")
        try:
            while not handle.cancel_token.is_set():
                try:
                    unit(handle)
                    handle.iterations += 1
                except Exception as e:
                    if handle.cancel_token.is_set():
                        break
                    handle.failures += 1
                    logger.warning(f"Worker {handle.ordinal}: iteração falhou: {e}")
                    handle.cancel_token.wait(retry_delay)
        finally:
            handle.state = WorkerState.STOPPED
            logger.debug(f"Worker {handle.ordinal} finalizado")

    def stop_all(self) -> bool:
        """
        Para todos os workers e espera a confirmação

        A janela de tolerância vale para o pool inteiro, não para cada worker.
        Idempotente: chamadas seguintes (inclusive concorrentes) não fazem nada.
        Retorna True apenas na chamada que efetivamente parou o pool.
        """
        with self._stop_lock:
            if self._stopped:
                return False
            self._stopped = True

            for handle in self.handles:
                handle.request_stop()
            self._join_until(self.handles, time.monotonic() + self.grace_period)

            stragglers = [h for h in self.handles if h.is_alive]
            for handle in stragglers:
                logger.warning(f"Worker {handle.ordinal} não parou em {self.grace_period}s, forçando cancelamento")
                handle.force_stop()
            self._join_until(stragglers, time.monotonic() + self.grace_period)

            # Um worker ainda vivo continua RUNNING; ele mesmo se marca STOPPED ao sair do loop
            still_alive = [h for h in stragglers if h.is_alive]
            for handle in still_alive:
                logger.warning(f"Worker {handle.ordinal} ainda ativo após cancelamento forçado")

            logger.info(f"{len(self.handles) - len(still_alive)} de {len(self.handles)} workers parados")
            return True

    @staticmethod
    def _join_until(handles, deadline):
        for handle in handles:
            if handle.thread is not None:
                handle.thread.join(timeout=max(0.0, deadline - time.monotonic()))

    @property
    def stopped(self) -> bool:
        return self._stopped

    def open_resources(self) -> int:
        return sum(1 for h in self.handles if h.resource is not None)

    def alive_count(self) -> int:
        return sum(1 for h in self.handles if h.is_alive)

    def total_iterations(self) -> int:
        return sum(h.iterations for h in self.handles)

    def total_failures(self) -> int:
        return sum(h.failures for h in self.handles)
