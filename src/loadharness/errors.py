"""
Exceções do harness de carga
"""


class LoadHarnessError(Exception):
    """Erro base do harness"""


class ConfigurationError(LoadHarnessError):
    """Parâmetro de execução fora da faixa documentada"""

    def __init__(self, field, message):
        self.field = field
        super().__init__(f"{field}: {message}")


class ProvisioningError(LoadHarnessError):
    """Falha fatal antes do início dos workers"""


class ConnectionFailed(ProvisioningError):
    pass


class InsufficientSpace(ProvisioningError):
    pass


class FileCreateFailed(ProvisioningError):
    pass


class TelemetryUnavailable(LoadHarnessError):
    """Fonte de métricas indisponível no momento (não fatal)"""
