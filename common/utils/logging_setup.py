"""
Logging configuration for the relay node.
Sets up logging with file and console handlers.
"""
import os
import logging
import logging.handlers
import sys
from typing import Optional, Dict, Any


def setup_logging(
    app_name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_to_console: bool = True,
    log_format: Optional[str] = None,
    max_size: int = 10485760,  # 10 MB
    backup_count: int = 5,
    include_thread_info: bool = False
) -> logging.Logger:
    """
    Configure logging for the application

    Args:
        app_name: Name of the application (prefix for logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (None for no file logging)
        log_to_console: Whether to log to console
        log_format: Custom log format (None for default)
        max_size: Maximum log file size in bytes
        backup_count: Number of backup log files
        include_thread_info: Include the thread name in logs (control loops run in their own threads)

    Returns:
        Configured logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(app_name)
    logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicate logging
    logger.handlers = []

    if not log_format:
        if include_thread_info:
            log_format = '%(asctime)s - %(name)s - [%(threadName)s] - %(levelname)s - %(message)s'
        else:
            log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    formatter = logging.Formatter(log_format)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_size,
                backupCount=backup_count
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

            logger.info(f"Logging to file: {log_file}")
        except OSError as e:
            logger.error(f"Failed to setup file logging: {e}")

    logger.info(f"Logging initialized for {app_name} at level {log_level}")

    return logger


class LogManager:
    """
    Routes the node's component loggers to one set of handlers.

    Modules log through bare-named loggers (``wireguard``, ``policy``,
    ``socks5``, ``service``...). The manager installs the configured handlers
    on the root logger and applies per-component levels from the
    ``components`` map of the logging configuration, so a single component
    can be turned up to DEBUG without flooding the log.
    """
    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the log manager

        Args:
            config: The ``logging`` section of the node configuration
        """
        self.config = dict(config)
        self.components: Dict[str, logging.Logger] = {}

        self.root_logger = setup_logging(
            app_name="relay",
            log_level=self.config.get("log_level", "INFO"),
            log_file=self.config.get("log_file"),
            log_to_console=self.config.get("log_to_console", True),
            include_thread_info=True
        )
        self.root_logger.propagate = False

        root = logging.getLogger()
        root.handlers = list(self.root_logger.handlers)
        root.setLevel(self.root_logger.level)

        for name, level in self.config.get("components", {}).items():
            self.set_log_level(level, name)

    def get_logger(self, name: str) -> logging.Logger:
        """
        Component logger, tracked so its level can be changed later

        Args:
            name: Component name, e.g. ``socks5``
        """
        if name not in self.components:
            self.components[name] = logging.getLogger(name)
        return self.components[name]

    def set_log_level(self, level: str, component: Optional[str] = None) -> None:
        """
        Set the level of one component, or of the whole node

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            component: Component name (None for every logger)
        """
        numeric_level = getattr(logging, level.upper(), logging.INFO)

        if component:
            self.get_logger(component).setLevel(numeric_level)
            self.root_logger.debug(f"Log level for {component} set to {level}")
            return

        logging.getLogger().setLevel(numeric_level)
        self.root_logger.setLevel(numeric_level)
        for logger in self.components.values():
            logger.setLevel(logging.NOTSET)
        self.root_logger.info(f"Log level set to {level}")
