"""
Flex Load Harness
Gera carga controlada de CPU (via PostgreSQL) ou de disco (via arquivos temporários)
"""

__version__ = "0.1.0"
