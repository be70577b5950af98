"""
Utility modules for the payments service
"""
from .config_loader import (
    DarajaConfig,
    ServerConfig,
    load_daraja_config,
    load_server_config,
    missing_required_env,
)

__all__ = [
    'DarajaConfig',
    'ServerConfig',
    'load_daraja_config',
    'load_server_config',
    'missing_required_env',
]
