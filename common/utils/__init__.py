"""
Utility modules for the relay node.
Includes configuration, logging, external commands and locking.
"""

from common.utils.config import ConfigManager
from common.utils.logging_setup import setup_logging, LogManager
from common.utils.commands import CommandRunner, has_admin_privileges
from common.utils.locks import ReadWriteLock

__all__ = [
    'ConfigManager',
    'setup_logging',
    'LogManager',
    'CommandRunner',
    'has_admin_privileges',
    'ReadWriteLock'
]
