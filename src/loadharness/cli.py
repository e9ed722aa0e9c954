#!/usr/bin/env python3
"""
Flex Load Harness
Gera carga de CPU (consultas no PostgreSQL) ou de disco (leituras/escritas aleatórias)
por um tempo limitado, com parada por arquivo de sinal ou Ctrl+C
"""

import argparse
import logging
import multiprocessing
import os
import sys

from loadharness.config import (
    BLOCK_SIZES_KB,
    MODE_CPU,
    MODE_DISK,
    IOType,
    RunConfiguration,
    build_configuration,
)
from loadharness.controller import LifecycleController
from loadharness.errors import ConfigurationError
from loadharness.monitor import CpuUtilizationMonitor, DiskIOMonitor
from loadharness.pool import WorkerPool
from loadharness.provisioner import DatabaseProvisioner, ScratchFileProvisioner
from loadharness.workunits import CpuQueryWorkUnit, DiskIOWorkUnit

logger = logging.getLogger(__name__)


def setup_logging(level='INFO', log_file=None):
    """Configura logging global"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='loadharness',
        description='Gerador de carga de CPU (PostgreSQL) ou de I/O de disco com parada cooperativa',
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', help='Arquivo .conf (seções database, cpu, disk, logging)')
    common.add_argument('-d', '--duration', type=int, help='Duração em minutos')
    common.add_argument('--stop-file', help='Arquivo cuja criação encerra a execução')
    common.add_argument('--sample-interval', type=float, help='Intervalo entre leituras do monitor (s)')
    common.add_argument('--poll-interval', type=float, help='Intervalo de verificação dos gatilhos (s)')
    common.add_argument('--stop-grace', type=float, help='Espera por worker antes de forçar o cancelamento (s)')
    common.add_argument('--log-level', help='DEBUG, INFO, WARNING, ERROR')
    common.add_argument('--log-file', help='Grava o log também neste arquivo')

    subparsers = parser.add_subparsers(dest='mode', required=True)

    cpu = subparsers.add_parser(MODE_CPU, parents=[common],
                                help='Carga de CPU via consultas no PostgreSQL')
    cpu.add_argument('-t', '--target', type=int, help='CPU alvo em %% (1-95, padrão: 70)')
    cpu.add_argument('--host', help='Host do PostgreSQL (padrão: localhost)')
    cpu.add_argument('--port', type=int, help='Porta do PostgreSQL (padrão: 5432)')
    cpu.add_argument('--database', help='Banco de rascunho (padrão: loadharness_scratch)')
    cpu.add_argument('--user', help='Usuário do banco (senha via DB_PASSWORD/PGPASSWORD)')
    cpu.add_argument('--connect-timeout', type=int, help='Timeout de conexão em segundos')
    cpu.add_argument('--query-seconds', type=int, help='Duração de cada consulta de carga (padrão: 30)')

    disk = subparsers.add_parser(MODE_DISK, parents=[common],
                                 help='Carga de I/O com leituras/escritas aleatórias')
    disk.add_argument('--io-type', choices=[t.value for t in IOType], help='Tipo de I/O (padrão: mixed)')
    disk.add_argument('-n', '--threads', type=int, help='Número de workers/arquivos (1-16, padrão: 4)')
    disk.add_argument('--directory', help='Diretório dos arquivos temporários')
    disk.add_argument('--file-size-gb', type=float, help='Tamanho de cada arquivo em GB (0.1-100)')
    disk.add_argument('--block-size-kb', type=int, choices=BLOCK_SIZES_KB, help='Tamanho do bloco em KB')
    disk.add_argument('--skip-space-check', action='store_true', default=None,
                      help='Não verifica o espaço livre antes de criar os arquivos')
    disk.add_argument('-y', '--yes', action='store_true', default=None,
                      help='Confirma automaticamente quando o espaço livre está abaixo da margem de 20%%')
    return parser


def make_confirm(assume_yes: bool):
    """Confirmação para seguir com espaço livre abaixo da margem de segurança"""
    def confirm(message):
        if assume_yes:
            logger.info("Margem de espaço reduzida confirmada automaticamente (--yes)")
            return True
        if not sys.stdin or not sys.stdin.isatty():
            logger.error("Confirmação necessária, mas a entrada não é interativa (use --yes)")
            return False
        answer = input(f"{message}. Continuar? [s/N] ")
        return answer.strip().lower() in ('s', 'sim', 'y', 'yes')
    return confirm


def build_controller(config: RunConfiguration, cores=None, **kwargs) -> LifecycleController:
    """Monta provisionador, unidade de trabalho, monitor e pool para o modo escolhido"""
    pool = WorkerPool(grace_period=config.stop_grace)

    if config.mode == MODE_CPU:
        if cores is None:
            cores = multiprocessing.cpu_count()
        worker_count = config.worker_count(cores)
        logger.info(f"Núcleos lógicos: {cores} | alvo: {config.target_percent}% | workers: {worker_count}")
        provisioner = DatabaseProvisioner(config.database)
        unit = CpuQueryWorkUnit(config.database, config.query_seconds)
        monitor = CpuUtilizationMonitor(config.target_percent)
    else:
        worker_count = config.worker_count()
        provisioner = ScratchFileProvisioner(
            config.directory,
            config.file_size_bytes,
            worker_count,
            skip_space_check=config.skip_space_check,
            confirm=make_confirm(config.assume_yes),
        )
        paths = [provisioner.scratch_path(i) for i in range(worker_count)]
        unit = DiskIOWorkUnit(paths, config.file_size_bytes, config.block_size_bytes, config.io_type)
        monitor = DiskIOMonitor(config.io_type)

    return LifecycleController(config, provisioner, pool, unit, monitor, worker_count, **kwargs)


def log_configuration(config: RunConfiguration):
    logger.info("=== INICIANDO EXECUÇÃO DE CARGA ===")
    logger.info(f"Modo: {config.mode}")
    logger.info(f"Duração: {config.duration_minutes} minutos")
    if config.mode == MODE_CPU:
        logger.info(f"CPU alvo: {config.target_percent}%")
        logger.info(f"Banco: {config.database.describe()}")
    else:
        logger.info(f"Tipo de I/O: {config.io_type.value}")
        logger.info(f"Workers: {config.thread_count} | arquivo: {config.file_size_gb} GB | "
                    f"bloco: {config.block_size_kb} KB")
        logger.info(f"Diretório: {config.directory}")


def main(argv=None) -> int:
    """Função principal"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_configuration(args.mode, args)
    except ConfigurationError as e:
        print(f"Erro de configuração: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, config.log_file)
    log_configuration(config)

    controller = build_controller(config)
    return controller.run()


if __name__ == "__main__":
    sys.exit(main())
