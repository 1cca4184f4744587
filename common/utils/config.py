"""
Configuration management for the relay node.
Handles reading, writing, and validating configuration from JSON files.
"""
import os
import json
import shutil
import logging
import ipaddress
from typing import Dict, Any, Optional, List


class ConfigManager:
    """
    Configuration manager for relay node settings
    """
    DEFAULT_CONFIG_PATH = "relay_node.json"

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the configuration manager

        Args:
            config_path: Path to the configuration file (None for default)
        """
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.config = {}
        self.logger = logging.getLogger("config")

        # Load existing config or create default
        self.load()

    def load(self) -> bool:
        """
        Load configuration from file

        Returns:
            True if successful, False otherwise
        """
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r') as f:
                    loaded = json.load(f)
                # Keys missing from the file fall back to the defaults
                self.config = self._create_default_config()
                self._recursive_update(self.config, loaded)
                self.logger.info(f"Configuration loaded from {self.config_path}")
                return True
            else:
                self.logger.warning(f"Configuration file {self.config_path} not found, creating default")
                self.config = self._create_default_config()
                self.save()
                return True

        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load configuration: {e}")
            self.config = self._create_default_config()
            return False

    def save(self) -> bool:
        """
        Save configuration to file

        Returns:
            True if successful, False otherwise
        """
        try:
            # Create backup if file exists
            if os.path.exists(self.config_path):
                backup_path = f"{self.config_path}.bak"
                shutil.copy2(self.config_path, backup_path)
                self.logger.debug(f"Created backup of configuration at {backup_path}")

            with open(self.config_path, 'w') as f:
                json.dump(self.config, f, indent=4)

            self.logger.info(f"Configuration saved to {self.config_path}")
            return True

        except OSError as e:
            self.logger.error(f"Failed to save configuration: {e}")
            return False

    def _create_default_config(self) -> Dict[str, Any]:
        """
        Create default configuration

        Returns:
            Default configuration dictionary
        """
        return {
            "version": "1.0.0",
            "node": {
                "node_id": "",
                "interface": "wg0",
                "listen_port": 51820,
                "internal_ip": "10.8.0.1",
                "subnet_prefix": 24,
                "external_interface": "eth0",
                "command_timeout": 10,
                "post_up": [
                    "iptables -A FORWARD -i wg0 -j ACCEPT",
                    "iptables -A FORWARD -o wg0 -j ACCEPT",
                    "iptables -t nat -A POSTROUTING -o eth0 -j MASQUERADE"
                ],
                "post_down": [
                    "iptables -D FORWARD -i wg0 -j ACCEPT",
                    "iptables -D FORWARD -o wg0 -j ACCEPT",
                    "iptables -t nat -D POSTROUTING -o eth0 -j MASQUERADE"
                ]
            },
            "sessions": {
                "heartbeat_interval": 30,
                "monitor_interval": 60,
                "metrics_interval": 15,
                "traffic_interval": 1,
                "keepalive_timeout": 600,
                "persistent_keepalive": 25
            },
            "policy": {
                "tunnel_interface": "wg0",
                "split_tunnel_table": 100,
                "webrtc_protection": False
            },
            "obfuscation": {
                "mode": "stealth",
                "enabled": False,
                "scramble_secret": ""
            },
            "multihop": {
                "chain_timeout": 5.0
            },
            "socks5": {
                "bind_address": "0.0.0.0",
                "bind_port": 1080,
                "username": "",
                "password": "",
                "dial_timeout": 10,
                "handshake_timeout": 30,
                "max_connections": 256
            },
            "database": {
                "url": "sqlite:///relay_node.db"
            },
            "web": {
                "bind_address": "127.0.0.1",
                "bind_port": 8080,
                "api_token": ""
            },
            "logging": {
                "log_level": "INFO",
                "log_file": "relay_node.log",
                "log_to_console": True,
                "components": {
                    "werkzeug": "WARNING"
                }
            }
        }

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value

        Args:
            key: Configuration key (dot notation for nested keys)
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self.config

        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value

        Args:
            key: Configuration key (dot notation for nested keys)
            value: Value to set
        """
        keys = key.split('.')
        config = self.config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def update(self, config_dict: Dict[str, Any]) -> None:
        """
        Update multiple configuration values

        Args:
            config_dict: Dictionary of configuration values to update
        """
        self._recursive_update(self.config, config_dict)

    def _recursive_update(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        """
        Recursively update nested dictionaries

        Args:
            target: Target dictionary to update
            source: Source dictionary with updates
        """
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._recursive_update(target[key], value)
            else:
                target[key] = value

    def validate(self) -> List[str]:
        """
        Validate the configuration

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        node = self.get('node', {})
        if not node.get('interface'):
            errors.append("Node interface is required")
        if not isinstance(node.get('listen_port'), int):
            errors.append("Node listen_port must be an integer")
        try:
            ipaddress.ip_interface(f"{node.get('internal_ip')}/{node.get('subnet_prefix')}")
        except ValueError:
            errors.append("Node internal_ip/subnet_prefix must form a valid interface address")
        if len(node.get('post_down', [])) > len(node.get('post_up', [])):
            errors.append("Node post_down has more commands than post_up")

        sessions = self.get('sessions', {})
        for name in ("heartbeat_interval", "monitor_interval", "metrics_interval",
                     "traffic_interval", "keepalive_timeout"):
            if not isinstance(sessions.get(name), (int, float)) or sessions.get(name) <= 0:
                errors.append(f"Sessions {name} must be a positive number")

        from common.networking.obfuscation import OBFUSCATION_MODES
        if self.get('obfuscation.mode') not in OBFUSCATION_MODES:
            errors.append(f"Obfuscation mode must be one of {', '.join(OBFUSCATION_MODES)}")

        socks5 = self.get('socks5', {})
        if not isinstance(socks5.get('bind_port'), int):
            errors.append("SOCKS5 bind_port must be an integer")
        if bool(socks5.get('username')) != bool(socks5.get('password')):
            errors.append("SOCKS5 username and password must be set together")
        if not isinstance(socks5.get('max_connections'), int) or socks5.get('max_connections') < 1:
            errors.append("SOCKS5 max_connections must be a positive integer")

        if not self.get('database.url'):
            errors.append("Database url is required")

        return errors

    def export_config(self, output_path: str) -> bool:
        """
        Export configuration to a file

        Args:
            output_path: Path to export to

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(output_path, 'w') as f:
                json.dump(self.config, f, indent=4)
            self.logger.info(f"Configuration exported to {output_path}")
            return True
        except OSError as e:
            self.logger.error(f"Failed to export configuration: {e}")
            return False

    def import_config(self, input_path: str, merge: bool = False) -> bool:
        """
        Import configuration from a file

        Args:
            input_path: Path to import from
            merge: True to merge with existing config, False to replace

        Returns:
            True if successful, False otherwise
        """
        try:
            with open(input_path, 'r') as f:
                imported_config = json.load(f)

            if merge:
                self.update(imported_config)
            else:
                self.config = imported_config

            self.logger.info(f"Configuration imported from {input_path}")
            return True
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to import configuration: {e}")
            return False
