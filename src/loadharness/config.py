"""
Configuração de uma execução de carga

Ordem de precedência: linha de comando > variáveis de ambiente > arquivo .conf > padrões.
Toda validação acontece antes de qualquer worker ser iniciado.
"""

import configparser
import multiprocessing
import os
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from loadharness.errors import ConfigurationError

MODE_CPU = 'cpu'
MODE_DISK = 'disk'

CPU_TARGET_RANGE = (1, 95)
CPU_DURATION_RANGE = (1, 60)
DISK_DURATION_RANGE = (1, 120)
DISK_THREADS_RANGE = (1, 16)
FILE_SIZE_GB_RANGE = (0.1, 100.0)
BLOCK_SIZES_KB = (4, 8, 16, 32, 64, 128, 256, 512, 1024)

# Margem de segurança sobre o espaço exigido pelos arquivos temporários
SPACE_BUFFER = 1.2

CPU_SAMPLE_INTERVAL = 10.0
DISK_SAMPLE_INTERVAL = 5.0

STOP_FILE_NAME = 'stop_loadharness.signal'
DEFAULT_DATABASE = 'loadharness_scratch'
DEFAULT_SCRATCH_DIR = os.path.join(tempfile.gettempdir(), 'loadharness_scratch')


class IOType(str, Enum):
    READ = 'read'
    WRITE = 'write'
    MIXED = 'mixed'


@dataclass(frozen=True)
class DatabaseLocator:
    """Endereço do PostgreSQL usado no modo CPU"""
    host: str = 'localhost'
    port: int = 5432
    database: str = DEFAULT_DATABASE
    user: str = 'postgres'
    password: str = field(default='', repr=False)
    connect_timeout: int = 5

    def connect_kwargs(self) -> dict:
        kwargs = {
            'host': self.host,
            'port': self.port,
            'dbname': self.database,
            'user': self.user,
            'connect_timeout': self.connect_timeout,
        }
        if self.password:
            kwargs['password'] = self.password
        return kwargs

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.database}"


def cpu_worker_count(cores: int, target_percent: int) -> int:
    """max(1, floor(cores * alvo / 100)), em aritmética inteira"""
    return max(1, (cores * target_percent) // 100)


def default_stop_file() -> str:
    """Arquivo de parada ao lado do ponto de entrada invocado"""
    entry_point = sys.argv[0] if sys.argv and sys.argv[0] else os.getcwd()
    base_dir = os.path.dirname(os.path.abspath(entry_point))
    return os.path.join(base_dir, STOP_FILE_NAME)


@dataclass(frozen=True)
class RunConfiguration:
    mode: str
    duration_minutes: int
    stop_file: str
    target_percent: Optional[int] = None
    database: Optional[DatabaseLocator] = None
    io_type: Optional[IOType] = None
    thread_count: Optional[int] = None
    directory: Optional[str] = None
    file_size_gb: float = 1.0
    block_size_kb: int = 64
    skip_space_check: bool = False
    assume_yes: bool = False
    sample_interval: Optional[float] = None
    poll_interval: float = 0.5
    stop_grace: float = 5.0
    query_seconds: int = 30
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return self.duration_minutes * 60.0

    @property
    def file_size_bytes(self) -> int:
        return int(self.file_size_gb * 1024 ** 3)

    @property
    def block_size_bytes(self) -> int:
        return self.block_size_kb * 1024

    @property
    def monitor_interval(self) -> float:
        if self.sample_interval is not None:
            return self.sample_interval
        return CPU_SAMPLE_INTERVAL if self.mode == MODE_CPU else DISK_SAMPLE_INTERVAL

    def worker_count(self, cores: Optional[int] = None) -> int:
        if self.mode == MODE_CPU:
            if cores is None:
                cores = multiprocessing.cpu_count()
            return cpu_worker_count(cores, self.target_percent)
        return self.thread_count

    def validate(self) -> 'RunConfiguration':
        """Rejeita qualquer valor fora das faixas documentadas"""
        if self.mode == MODE_CPU:
            _check_int('target_percent', self.target_percent, CPU_TARGET_RANGE)
            _check_int('duration_minutes', self.duration_minutes, CPU_DURATION_RANGE)
            if self.database is None:
                raise ConfigurationError('database', "localizador do banco é obrigatório no modo cpu")
            if not self.database.host or not self.database.database:
                raise ConfigurationError('database', "host e nome do banco são obrigatórios")
            _check_int('database.port', self.database.port, (1, 65535))
            _check_int('database.connect_timeout', self.database.connect_timeout, (1, 300))
            _check_int('query_seconds', self.query_seconds, (1, 3600))
        elif self.mode == MODE_DISK:
            if not isinstance(self.io_type, IOType):
                raise ConfigurationError('io_type', f"esperado um de {[t.value for t in IOType]}")
            _check_int('duration_minutes', self.duration_minutes, DISK_DURATION_RANGE)
            _check_int('thread_count', self.thread_count, DISK_THREADS_RANGE)
            low, high = FILE_SIZE_GB_RANGE
            if isinstance(self.file_size_gb, bool) or not isinstance(self.file_size_gb, (int, float)) \
                    or not low <= self.file_size_gb <= high:
                raise ConfigurationError('file_size_gb', f"deve estar entre {low} e {high} GB")
            if self.block_size_kb not in BLOCK_SIZES_KB:
                raise ConfigurationError('block_size_kb', f"deve ser um de {list(BLOCK_SIZES_KB)}")
            if self.block_size_bytes >= self.file_size_bytes:
                raise ConfigurationError('block_size_kb', "bloco deve ser menor que o arquivo")
            if not self.directory:
                raise ConfigurationError('directory', "diretório de trabalho é obrigatório")
        else:
            raise ConfigurationError('mode', f"modo desconhecido: {self.mode!r}")

        if not self.stop_file:
            raise ConfigurationError('stop_file', "caminho do arquivo de parada é obrigatório")
        if self.poll_interval <= 0:
            raise ConfigurationError('poll_interval', "deve ser positivo")
        if self.sample_interval is not None and self.sample_interval <= 0:
            raise ConfigurationError('sample_interval', "deve ser positivo")
        if self.stop_grace < 0:
            raise ConfigurationError('stop_grace', "não pode ser negativo")
        return self


def _check_int(name, value, bounds):
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(name, f"esperado inteiro, recebido {value!r}")
    if not low <= value <= high:
        raise ConfigurationError(name, f"{value} fora da faixa {low}-{high}")


def load_config_file(path: Optional[str]) -> configparser.ConfigParser:
    """Lê o arquivo .conf opcional (seções database, cpu, disk, logging)"""
    parser = configparser.ConfigParser()
    if path is None:
        return parser
    if not os.path.exists(path):
        raise ConfigurationError('config', f"arquivo de configuração não encontrado: {path}")
    try:
        parser.read(path)
    except configparser.Error as e:
        raise ConfigurationError('config', f"arquivo de configuração inválido: {e}") from e
    return parser


class _Layers:
    """Resolve um valor entre CLI, ambiente e arquivo .conf"""

    def __init__(self, args, env: Mapping[str, str], conf: configparser.ConfigParser):
        self.args = args
        self.env = env
        self.conf = conf

    def get(self, arg_name, section, option, default, cast=str, env_keys=()):
        value = getattr(self.args, arg_name, None) if arg_name else None
        if value is not None:
            return value
        for key in env_keys:
            if self.env.get(key):
                return self._cast(option, self.env[key], cast)
        if self.conf.has_option(section, option):
            return self._cast(option, self.conf.get(section, option), cast)
        return default

    @staticmethod
    def _cast(option, raw, cast):
        try:
            if cast is bool:
                return configparser.ConfigParser.BOOLEAN_STATES[raw.strip().lower()]
            return cast(raw)
        except (KeyError, ValueError) as e:
            raise ConfigurationError(option, f"valor inválido {raw!r}") from e


def build_configuration(mode: str, args, env: Optional[Mapping[str, str]] = None) -> RunConfiguration:
    """Monta e valida a RunConfiguration a partir dos argumentos já parseados"""
    if env is None:
        env = os.environ
    conf = load_config_file(getattr(args, 'config', None))
    layers = _Layers(args, env, conf)

    common = dict(
        mode=mode,
        stop_file=layers.get('stop_file', 'general', 'stop_file', default_stop_file(),
                             env_keys=('LOADHARNESS_STOP_FILE',)),
        poll_interval=layers.get('poll_interval', 'general', 'poll_interval', 0.5, float),
        sample_interval=layers.get('sample_interval', mode, 'sample_interval', None, float),
        stop_grace=layers.get('stop_grace', 'general', 'stop_grace', 5.0, float),
        assume_yes=bool(layers.get('yes', 'general', 'assume_yes', False, bool)),
        log_level=layers.get('log_level', 'logging', 'log_level', 'INFO',
                             env_keys=('LOADHARNESS_LOG_LEVEL',)).upper(),
        log_file=layers.get('log_file', 'logging', 'log_file', None),
    )

    if mode == MODE_CPU:
        database = DatabaseLocator(
            host=layers.get('host', 'database', 'host', 'localhost', env_keys=('DB_HOST',)),
            port=layers.get('port', 'database', 'port', 5432, int, env_keys=('DB_PORT',)),
            database=layers.get('database', 'database', 'database', DEFAULT_DATABASE,
                                env_keys=('DB_NAME',)),
            user=layers.get('user', 'database', 'username', 'postgres', env_keys=('DB_USER',)),
            password=layers.get(None, 'database', 'password', '',
                                env_keys=('DB_PASSWORD', 'PGPASSWORD')),
            connect_timeout=layers.get('connect_timeout', 'database', 'connect_timeout', 5, int),
        )
        config = RunConfiguration(
            target_percent=layers.get('target', 'cpu', 'target_percent', 70, int),
            duration_minutes=layers.get('duration', 'cpu', 'duration_minutes', 10, int),
            database=database,
            query_seconds=layers.get('query_seconds', 'cpu', 'query_seconds', 30, int),
            **common,
        )
    elif mode == MODE_DISK:
        raw_io_type = layers.get('io_type', 'disk', 'io_type', IOType.MIXED.value)
        try:
            io_type = IOType(str(raw_io_type).lower())
        except ValueError as e:
            raise ConfigurationError('io_type', f"valor inválido {raw_io_type!r}") from e
        config = RunConfiguration(
            io_type=io_type,
            duration_minutes=layers.get('duration', 'disk', 'duration_minutes', 10, int),
            thread_count=layers.get('threads', 'disk', 'thread_count', 4, int),
            directory=layers.get('directory', 'disk', 'directory', DEFAULT_SCRATCH_DIR),
            file_size_gb=layers.get('file_size_gb', 'disk', 'file_size_gb', 1.0, float),
            block_size_kb=layers.get('block_size_kb', 'disk', 'block_size_kb', 64, int),
            skip_space_check=bool(layers.get('skip_space_check', 'disk', 'skip_space_check',
                                             False, bool)),
            **common,
        )
    else:
        raise ConfigurationError('mode', f"modo desconhecido: {mode!r}")

    return config.validate()
