"""
Controle do ciclo de vida de uma execução de carga

Initializing -> Provisioning -> Running -> Stopping -> Stopped

Três gatilhos de parada (duração, arquivo de parada, interrupção) passam todos
pelo mesmo CancellationSignal; o primeiro vence. A sequência de encerramento
roda no máximo uma vez, mesmo com gatilhos concorrentes ou via atexit.
"""

import atexit
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from loadharness.config import MODE_DISK, RunConfiguration
from loadharness.errors import ProvisioningError, TelemetryUnavailable
from loadharness.monitor import RunStatus, format_duration

logger = logging.getLogger(__name__)


class RunState(Enum):
    INITIALIZING = 'initializing'
    PROVISIONING = 'provisioning'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'


class StopTrigger(Enum):
    DURATION_EXPIRED = 'duração expirada'
    EXTERNAL_SIGNAL_DETECTED = 'arquivo de parada detectado'
    INTERRUPT_RECEIVED = 'interrupção recebida'


class CancellationSignal:
    """Sinal de cancelamento que guarda o primeiro motivo recebido"""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[StopTrigger] = None

    def cancel(self, reason: StopTrigger) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@dataclass
class RunContext:
    config: RunConfiguration
    state: RunState = RunState.INITIALIZING
    workers: List = field(default_factory=list)
    scratch_resources: List = field(default_factory=list)
    files_created: int = 0
    files_removed: int = 0
    trigger: Optional[StopTrigger] = None
    started_at: Optional[float] = None
    stop_requested_at: Optional[float] = None
    stopped_at: Optional[float] = None
    summaries_emitted: int = 0


def _print_line(line):
    print(line, flush=True)


class LifecycleController:

    def __init__(self, config: RunConfiguration, provisioner, pool, unit, monitor,
                 worker_count: int, cancel: CancellationSignal = None,
                 clock=time.monotonic, sleep=None, out=_print_line, handle_signals=True):
        self.config = config
        self.provisioner = provisioner
        self.pool = pool
        self.unit = unit
        self.monitor = monitor
        self.worker_count = worker_count
        self.cancel = cancel or CancellationSignal()
        self.clock = clock
        self.sleep = sleep or self.cancel.wait
        self.out = out
        self.handle_signals = handle_signals
        self.context = RunContext(config)
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False
        self._previous_handlers = {}

    # -- execução -------------------------------------------------------

    def run(self) -> int:
        """Executa a carga até o primeiro gatilho de parada; retorna o código de saída"""
        ctx = self.context
        self._install_hooks()
        try:
            ctx.state = RunState.PROVISIONING
            self._clear_stale_stop_file()
            try:
                self.provisioner.prepare(ctx, self.cancel)
            except ProvisioningError as e:
                logger.error(f"Falha no provisionamento: {e}")
                ctx.state = RunState.STOPPED
                return 1

            try:
                if not self.cancel.cancelled:
                    ctx.workers = self.pool.start(self.worker_count, self.unit)
                    ctx.started_at = self.clock()
                    ctx.state = RunState.RUNNING
                    logger.info(f"Execução iniciada: {self.worker_count} workers por "
                                f"{self.config.duration_minutes} min | arquivo de parada: {self.config.stop_file}")
                    self.monitor.start()
                    self._control_loop()
            finally:
                self.shutdown()
            return 0
        finally:
            self._remove_hooks()

    def _control_loop(self):
        ctx = self.context
        interval = self.config.monitor_interval
        deadline = ctx.started_at + self.config.duration_seconds
        next_sample = ctx.started_at + interval

        while not self.cancel.cancelled:
            now = self.clock()
            if now >= deadline:
                self.cancel.cancel(StopTrigger.DURATION_EXPIRED)
                break
            if os.path.exists(self.config.stop_file):
                logger.info(f"Arquivo de parada detectado: {self.config.stop_file}")
                self.cancel.cancel(StopTrigger.EXTERNAL_SIGNAL_DETECTED)
                break
            if now >= next_sample:
                self.report(now, deadline)
                while next_sample <= now:
                    next_sample += interval
            self.sleep(min(self.config.poll_interval, deadline - now))

        ctx.stop_requested_at = self.clock()

    def report(self, now: float, deadline: float) -> RunStatus:
        elapsed = now - self.context.started_at
        remaining = max(0.0, deadline - now)
        try:
            status = self.monitor.sample(elapsed, remaining)
        except TelemetryUnavailable as e:
            status = RunStatus.degraded(self.monitor.metric, self.monitor.target_label,
                                        elapsed, remaining, str(e))
        self.out(status.format_line())
        return status

    # -- encerramento ---------------------------------------------------

    def shutdown(self, trigger: Optional[StopTrigger] = None) -> bool:
        """
        Sequência única de encerramento: workers -> recursos -> resumo

        Retorna False quando o encerramento já foi feito (ou está em andamento) por outro gatilho.
        """
        if trigger is not None:
            self.cancel.cancel(trigger)

        ctx = self.context
        with self._shutdown_lock:
            if self._shutdown_started or ctx.state in (RunState.INITIALIZING, RunState.STOPPED):
                return False
            self._shutdown_started = True
            ctx.state = RunState.STOPPING

        ctx.trigger = self.cancel.reason
        if ctx.stop_requested_at is None:
            ctx.stop_requested_at = self.clock()
        reason = ctx.trigger.value if ctx.trigger else 'encerramento do processo'
        logger.info(f"Encerrando execução ({reason})...")

        self._best_effort("parar workers", self.pool.stop_all)
        self._best_effort("fechar monitor", self.monitor.close)
        self._best_effort("remover arquivos temporários", self.provisioner.release, ctx)
        self._best_effort("remover arquivo de parada", self._remove_stop_file)

        ctx.stopped_at = self.clock()
        ctx.state = RunState.STOPPED
        self._emit_summary()
        return True

    @staticmethod
    def _best_effort(step, func, *args):
        try:
            func(*args)
        except Exception as e:
            logger.warning(f"Falha ao {step}: {e}")

    def _remove_stop_file(self):
        try:
            os.remove(self.config.stop_file)
            logger.info(f"Arquivo de parada removido: {self.config.stop_file}")
        except FileNotFoundError:
            pass

    def _clear_stale_stop_file(self):
        if os.path.exists(self.config.stop_file):
            logger.warning(f"Removendo arquivo de parada antigo: {self.config.stop_file}")
            self._remove_stop_file()

    def summary_lines(self) -> List[str]:
        ctx = self.context
        runtime = 0.0
        if ctx.started_at is not None and ctx.stopped_at is not None:
            runtime = ctx.stopped_at - ctx.started_at
        reason = ctx.trigger.value if ctx.trigger else 'encerramento do processo'

        lines = [
            "=" * 50,
            "RESUMO DA EXECUÇÃO",
            "=" * 50,
            f"Motivo da parada: {reason}",
            f"Duração total: {format_duration(runtime)} ({runtime:.1f}s)",
            f"Workers iniciados: {len(ctx.workers)}",
            f"Iterações concluídas: {self.pool.total_iterations()}",
            f"Iterações com falha: {self.pool.total_failures()}",
        ]
        if self.config.mode == MODE_DISK:
            lines.append(f"Arquivos criados: {ctx.files_created} | removidos: {ctx.files_removed}")
        lines.append("=" * 50)
        return lines

    def _emit_summary(self):
        self.context.summaries_emitted += 1
        for line in self.summary_lines():
            self.out(line)

    # -- ganchos do processo ----------------------------------------------

    def _on_signal(self, signum, frame):
        logger.info(f"Recebido sinal {signum}. Finalizando execução...")
        self.cancel.cancel(StopTrigger.INTERRUPT_RECEIVED)

    def _install_hooks(self):
        atexit.register(self.shutdown)
        if self.handle_signals and threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _remove_hooks(self):
        atexit.unregister(self.shutdown)
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
