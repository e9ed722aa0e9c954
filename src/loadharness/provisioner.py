"""
Preparação do substrato de carga: teste de conexão (modo CPU)
ou validação de espaço e criação dos arquivos temporários (modo disco)
"""

import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional

import psutil
import psycopg2

from loadharness.config import SPACE_BUFFER, DatabaseLocator
from loadharness.errors import ConnectionFailed, FileCreateFailed, InsufficientSpace

logger = logging.getLogger(__name__)

GB = 1024 ** 3


@dataclass(frozen=True)
class ScratchResource:
    path: str
    size: int


class DatabaseProvisioner:
    """Só verifica a conexão; nenhum estado é mantido"""

    def __init__(self, locator: DatabaseLocator, connect=None):
        self.locator = locator
        self._connect = connect or psycopg2.connect

    def prepare(self, context, cancel=None):
        try:
            conn = self._connect(**self.locator.connect_kwargs())
        except psycopg2.Error as e:
            raise ConnectionFailed(f"não foi possível conectar em {self.locator.describe()}: {e}") from e
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT version();")
                version = cursor.fetchone()
            logger.info(f"Conexão bem-sucedida: {version[0]}")
        except psycopg2.Error as e:
            raise ConnectionFailed(f"falha ao consultar {self.locator.describe()}: {e}") from e
        finally:
            conn.close()

    def release(self, context):
        return 0


class ScratchFileProvisioner:
    """Valida espaço livre e cria um arquivo de tamanho fixo, com bytes aleatórios, por worker"""

    CHUNK_SIZE = 1024 * 1024
    FILE_PREFIX = 'loadharness_'

    def __init__(self, directory: str, file_size: int, count: int,
                 skip_space_check: bool = False,
                 confirm: Optional[Callable[[str], bool]] = None,
                 disk_usage=None):
        self.directory = directory
        self.file_size = file_size
        self.count = count
        self.skip_space_check = skip_space_check
        self.confirm = confirm
        self._disk_usage = disk_usage or psutil.disk_usage

    @property
    def required_bytes(self) -> int:
        return self.file_size * self.count

    def scratch_path(self, ordinal: int) -> str:
        return os.path.join(self.directory, f"{self.FILE_PREFIX}{ordinal}.dat")

    def available_bytes(self) -> int:
        # O diretório pode ainda não existir: mede o volume do ancestral mais próximo
        path = os.path.abspath(self.directory)
        while not os.path.exists(path):
            parent = os.path.dirname(path)
            if parent == path:
                break
            path = parent
        try:
            return self._disk_usage(path).free
        except OSError as e:
            raise InsufficientSpace(f"não foi possível medir o espaço livre em {path}: {e}") from e

    def check_space(self):
        if self.skip_space_check:
            logger.warning("Verificação de espaço em disco ignorada (--skip-space-check)")
            return

        required = self.required_bytes
        available = self.available_bytes()
        logger.info(f"Espaço necessário: {required / GB:.2f} GB | disponível: {available / GB:.2f} GB")

        if available < required:
            raise InsufficientSpace(
                f"espaço insuficiente em {self.directory}: necessário {required / GB:.2f} GB, "
                f"disponível {available / GB:.2f} GB"
            )
        if available < required * SPACE_BUFFER:
            message = (
                f"Espaço livre ({available / GB:.2f} GB) abaixo da margem de "
                f"{int((SPACE_BUFFER - 1) * 100)}% sobre o necessário ({required / GB:.2f} GB)"
            )
            logger.warning(message)
            if self.confirm is None or not self.confirm(message):
                raise InsufficientSpace(f"{message}; execução não confirmada")

    def prepare(self, context, cancel=None):
        self.check_space()

        try:
            os.makedirs(self.directory, exist_ok=True)
        except OSError as e:
            raise FileCreateFailed(f"não foi possível criar {self.directory}: {e}") from e

        try:
            for ordinal in range(self.count):
                path = self.scratch_path(ordinal)
                logger.info(f"Criando arquivo {ordinal + 1}/{self.count}: {path}")
                # Registrado antes de escrever para que uma falha no meio também seja limpa
                context.scratch_resources.append(ScratchResource(path, self.file_size))
                self._write_random_file(path, cancel)
                context.files_created += 1
        except (OSError, FileCreateFailed) as e:
            logger.error(f"Falha ao criar arquivos temporários: {e}")
            self.release(context)
            if isinstance(e, FileCreateFailed):
                raise
            raise FileCreateFailed(str(e)) from e

    def _write_random_file(self, path, cancel):
        remaining = self.file_size
        with open(path, 'wb') as f:
            while remaining > 0:
                if cancel is not None and cancel.cancelled:
                    raise FileCreateFailed(f"criação de {path} interrompida")
                chunk = min(self.CHUNK_SIZE, remaining)
                f.write(os.urandom(chunk))
                remaining -= chunk
            f.flush()

    def release(self, context) -> int:
        """Remove os arquivos temporários; falhas individuais não interrompem a limpeza"""
        removed = 0
        for resource in list(context.scratch_resources):
            try:
                os.remove(resource.path)
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Não foi possível remover {resource.path}: {e}")
                continue
            context.scratch_resources.remove(resource)
        context.files_removed += removed
        if removed:
            logger.info(f"{removed} arquivos temporários removidos")
        return removed
