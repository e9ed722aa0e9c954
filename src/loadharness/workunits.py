"""
Unidades de trabalho executadas em loop pelos workers

Cada chamada abre, usa e libera o seu próprio recurso (conexão ou arquivo);
nada é mantido entre uma iteração e outra.
"""

import os
import random
import re
from typing import Sequence

import psycopg2

from loadharness.config import DatabaseLocator, IOType

# Bloco anônimo somente leitura: primos por divisão até a raiz + sha256 do contador,
# com uma pausa curta a cada 1000 iterações para não estourar o watchdog do servidor.
CPU_BURN_SQL = """
DO $$
DECLARE
    deadline timestamptz := clock_timestamp() + make_interval(secs => {seconds});
    i bigint := 0;
    k integer;
    d integer;
    is_prime boolean;
    digest bytea;
BEGIN
    WHILE clock_timestamp() < deadline LOOP
        i := i + 1;
        k := (i % 10000)::integer + 2;
        is_prime := true;
        d := 2;
        WHILE d * d <= k LOOP
            IF k % d = 0 THEN
                is_prime := false;
                EXIT;
            END IF;
            d := d + 1;
        END LOOP;
        digest := sha256(convert_to(i::text, 'UTF8'));
        IF i % 1000 = 0 THEN
            PERFORM pg_sleep(0.0005);
        END IF;
    END LOOP;
    RAISE NOTICE 'loadharness iterations=%', i;
END
$$;
"""

_ITERATIONS_RE = re.compile(r'loadharness iterations=(\d+)')


def build_cpu_burn_sql(seconds: int) -> str:
    return CPU_BURN_SQL.format(seconds=int(seconds))


def parse_iterations(notices: Sequence[str]) -> int:
    for notice in reversed(notices):
        match = _ITERATIONS_RE.search(notice)
        if match:
            return int(match.group(1))
    return 0


class CpuQueryWorkUnit:
    """Executa uma consulta de ~30s que queima CPU no servidor PostgreSQL"""

    retry_delay = 1.0

    def __init__(self, locator: DatabaseLocator, query_seconds: int = 30, connect=None):
        self.locator = locator
        self.sql = build_cpu_burn_sql(query_seconds)
        self._connect = connect or psycopg2.connect

    def __call__(self, worker) -> int:
        conn = self._connect(**self.locator.connect_kwargs())
        with worker.holding(conn):
            try:
                # A parada pode ter chegado enquanto connect() ainda estava em andamento
                if worker.cancel_token.is_set():
                    return 0
                conn.autocommit = True
                with conn.cursor() as cursor:
                    cursor.execute(self.sql)
                return parse_iterations(conn.notices)
            finally:
                conn.close()


class DiskIOWorkUnit:
    """
    Uma leitura ou escrita de um bloco em offset aleatório

    Cada worker usa o seu próprio arquivo: paths[worker.ordinal].
    """

    retry_delay = 0.05

    def __init__(self, paths: Sequence[str], file_size: int, block_size: int,
                 io_type: IOType, rng: random.Random = None):
        if block_size >= file_size:
            raise ValueError("block_size deve ser menor que file_size")
        self.paths = list(paths)
        self.file_size = file_size
        self.block_size = block_size
        self.io_type = IOType(io_type)
        self.rng = rng or random.Random()

    def choose_operation(self) -> IOType:
        if self.io_type is IOType.MIXED:
            return IOType.READ if self.rng.random() < 0.5 else IOType.WRITE
        return self.io_type

    def choose_offset(self) -> int:
        return self.rng.randrange(0, self.file_size - self.block_size)

    def __call__(self, worker) -> IOType:
        path = self.paths[worker.ordinal]
        operation = self.choose_operation()
        offset = self.choose_offset()

        if operation is IOType.READ:
            with open(path, 'rb') as f, worker.holding(f):
                f.seek(offset)
                f.read(self.block_size)
        else:
            data = os.urandom(self.block_size)
            with open(path, 'r+b') as f, worker.holding(f):
                f.seek(offset)
                f.write(data)
                f.flush()
        return operation
