"""
Monitoramento amostrado da intensidade da carga

Os números são apenas informativos: nenhuma leitura altera o estado da execução.
"""

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import psutil

from loadharness.errors import TelemetryUnavailable

logger = logging.getLogger(__name__)


class LoadLevel(Enum):
    NOMINAL = 'nominal'
    ACCEPTABLE = 'aceitável'
    UNDER_TARGET = 'abaixo do alvo'
    OVER_TARGET = 'acima do alvo'


def classify_cpu(measured: float, target: float) -> LoadLevel:
    drift = abs(measured - target)
    if drift <= 5:
        return LoadLevel.NOMINAL
    if drift <= 15:
        return LoadLevel.ACCEPTABLE
    if measured > target:
        return LoadLevel.OVER_TARGET
    return LoadLevel.UNDER_TARGET


def classify_disk(total_iops: float) -> LoadLevel:
    if total_iops >= 100:
        return LoadLevel.NOMINAL
    if total_iops >= 50:
        return LoadLevel.ACCEPTABLE
    return LoadLevel.UNDER_TARGET


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class RunStatus:
    timestamp: datetime
    metric: str
    measured: Optional[float]
    target: str
    elapsed: float
    remaining: float
    level: Optional[LoadLevel] = None
    detail: dict = field(default_factory=dict)
    reason: Optional[str] = None

    @classmethod
    def degraded(cls, metric, target, elapsed, remaining, reason):
        return cls(datetime.now(), metric, None, target, elapsed, remaining, reason=reason)

    def format_line(self) -> str:
        stamp = self.timestamp.strftime('%Y-%m-%d %H:%M:%S')
        if self.measured is None:
            value = f"{self.metric}: indisponível ({self.reason})" if self.reason else f"{self.metric}: indisponível"
        elif self.metric == 'CPU':
            value = f"CPU: {self.measured:.1f}%"
        else:
            value = (f"{self.metric}: {self.measured:.1f} "
                     f"(leituras {self.detail.get('reads_per_sec', 0):.1f}/s, "
                     f"escritas {self.detail.get('writes_per_sec', 0):.1f}/s)")
        parts = [
            f"[{stamp}] {value}",
            f"alvo: {self.target}",
            f"decorrido: {format_duration(self.elapsed)}",
            f"restante: {format_duration(self.remaining)}",
        ]
        if self.level is not None:
            parts.append(self.level.value)
        return " | ".join(parts)


class CpuUtilizationMonitor:
    """
    Média das últimas 30 leituras de um segundo da CPU

    Uma thread de coleta mantém o buffer circular; sample() apenas calcula a média.
    """

    metric = 'CPU'

    def __init__(self, target_percent: int, window: int = 30, cpu_percent=None):
        self.target_percent = target_percent
        self.samples = deque(maxlen=window)
        self._cpu_percent = cpu_percent or psutil.cpu_percent
        self._stop = threading.Event()
        self._thread = None

    @property
    def target_label(self) -> str:
        return f"{self.target_percent}%"

    def start(self):
        self._thread = threading.Thread(target=self._collect, name='loadharness-cpu-sampler', daemon=True)
        self._thread.start()

    def _collect(self):
        while not self._stop.is_set():
            try:
                self.record(self._cpu_percent(interval=1))
            except Exception as e:
                logger.debug(f"Leitura de CPU falhou: {e}")
                self._stop.wait(1)

    def record(self, value: float):
        self.samples.append(float(value))

    def average(self) -> float:
        snapshot = list(self.samples)
        if not snapshot:
            raise TelemetryUnavailable("sem amostras de CPU ainda")
        return sum(snapshot) / len(snapshot)

    def sample(self, elapsed: float, remaining: float) -> RunStatus:
        measured = self.average()
        return RunStatus(
            timestamp=datetime.now(),
            metric=self.metric,
            measured=measured,
            target=self.target_label,
            elapsed=elapsed,
            remaining=remaining,
            level=classify_cpu(measured, self.target_percent),
        )

    def close(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)


# Partições e dispositivos virtuais não entram na soma dos discos físicos
_NON_PHYSICAL = re.compile(
    r'^(loop\d+|ram\d+|zram\d+|dm-\d+|md\d+|sr\d+|fd\d+'
    r'|(sd|hd|vd|xvd)[a-z]+\d+|nvme\d+n\d+p\d+|mmcblk\d+p\d+)$'
)


def is_physical_disk(name: str) -> bool:
    return not _NON_PHYSICAL.match(name)


class DiskIOMonitor:
    """Leituras e escritas por segundo, somadas em todos os discos físicos"""

    metric = 'IOPS'

    def __init__(self, io_type, io_counters=None, clock=time.monotonic):
        self.io_type = io_type
        self._io_counters = io_counters or psutil.disk_io_counters
        self._clock = clock
        self._baseline = None

    @property
    def target_label(self) -> str:
        return getattr(self.io_type, 'value', str(self.io_type))

    def _read(self):
        try:
            counters = self._io_counters(perdisk=True)
        except Exception as e:
            raise TelemetryUnavailable(f"contadores de disco indisponíveis: {e}") from e
        if not counters:
            raise TelemetryUnavailable("contadores de disco indisponíveis")
        reads = writes = 0
        for name, stats in counters.items():
            if is_physical_disk(name):
                reads += stats.read_count
                writes += stats.write_count
        return reads, writes, self._clock()

    def start(self):
        try:
            self._baseline = self._read()
        except TelemetryUnavailable as e:
            logger.warning(f"Monitor de disco sem linha de base: {e}")

    def sample(self, elapsed: float, remaining: float) -> RunStatus:
        current = self._read()
        previous, self._baseline = self._baseline, current
        if previous is None:
            raise TelemetryUnavailable("coletando linha de base")

        interval = current[2] - previous[2]
        if interval <= 0:
            raise TelemetryUnavailable("intervalo de amostragem inválido")
        reads_per_sec = max(0, current[0] - previous[0]) / interval
        writes_per_sec = max(0, current[1] - previous[1]) / interval
        total = reads_per_sec + writes_per_sec
        return RunStatus(
            timestamp=datetime.now(),
            metric=self.metric,
            measured=total,
            target=self.target_label,
            elapsed=elapsed,
            remaining=remaining,
            level=classify_disk(total),
            detail={'reads_per_sec': reads_per_sec, 'writes_per_sec': writes_per_sec},
        )

    def close(self):
        self._baseline = None
