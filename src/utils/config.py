"""
Configuration for Binlog Flashback

Settings are layered: YAML file, then environment variables, then command
line flags (applied by the CLI).

Example file:

    mysql:
      host: db.internal
      port: 3306
      user: flashback
    filters:
      databases: [shop]
      tables: [orders, order_items]
    output: rollback.sql
    metrics:
      port: 9108
    vault:
      enabled: true
      mount_point: secret
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from src.flashback.exceptions import ArgumentError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3306


@dataclass
class MySQLSettings:
    """Connection settings for the source server."""

    host: Optional[str] = None
    port: int = DEFAULT_PORT
    user: Optional[str] = None
    password: Optional[str] = None

    def validate(self) -> None:
        """
        Raises:
            ArgumentError: If a required setting is missing or invalid
        """
        if not self.host:
            raise ArgumentError("MySQL host is required")
        if not self.user:
            raise ArgumentError("MySQL user is required")
        if self.password is None:
            raise ArgumentError("MySQL password is required")
        if not 0 < self.port < 65536:
            raise ArgumentError(f"Invalid MySQL port: {self.port}")

    def connection_settings(self) -> Dict[str, Any]:
        """Keyword arguments for pymysql.connect."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "passwd": self.password,
        }


@dataclass
class FlashbackConfig:
    """Complete tool configuration."""

    mysql: MySQLSettings = field(default_factory=MySQLSettings)
    databases: List[str] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)
    output: str = "rollback.sql"
    metrics_port: Optional[int] = None
    pushgateway_url: Optional[str] = None
    vault_enabled: bool = False
    vault_mount_point: str = "secret"


def _as_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item) for item in value]
    raise ArgumentError(f"'{name}' must be a list or a comma separated string")


def _as_port(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ArgumentError(f"'{name}' must be an integer, got {value!r}")


def load_config(path: Optional[Union[str, Path]] = None) -> FlashbackConfig:
    """
    Load configuration from a YAML file and the environment.

    Args:
        path: Optional YAML file

    Returns:
        FlashbackConfig

    Raises:
        ArgumentError: If the file is missing, unparsable or holds invalid values
    """
    data: Dict[str, Any] = {}

    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ArgumentError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ArgumentError(f"Invalid config file {config_path}: {e}")
        if not isinstance(data, dict):
            raise ArgumentError(f"Config file {config_path} must contain a mapping")
        logger.debug(f"Loaded config file {config_path}")

    mysql_data = data.get("mysql") or {}
    filters = data.get("filters") or {}
    metrics = data.get("metrics") or {}
    vault = data.get("vault") or {}

    mysql = MySQLSettings(
        host=mysql_data.get("host"),
        port=_as_port(mysql_data.get("port", DEFAULT_PORT), "mysql.port"),
        user=mysql_data.get("user"),
        password=mysql_data.get("password"),
    )

    # Environment overrides the file
    if os.getenv("MYSQL_HOST"):
        mysql.host = os.getenv("MYSQL_HOST")
    if os.getenv("MYSQL_PORT"):
        mysql.port = _as_port(os.getenv("MYSQL_PORT"), "MYSQL_PORT")
    if os.getenv("MYSQL_USER"):
        mysql.user = os.getenv("MYSQL_USER")
    if os.getenv("MYSQL_PASSWORD") is not None:
        mysql.password = os.getenv("MYSQL_PASSWORD")

    metrics_port = metrics.get("port")

    return FlashbackConfig(
        mysql=mysql,
        databases=_as_list(filters.get("databases"), "filters.databases"),
        tables=_as_list(filters.get("tables"), "filters.tables"),
        output=data.get("output", "rollback.sql"),
        metrics_port=_as_port(metrics_port, "metrics.port") if metrics_port is not None else None,
        pushgateway_url=metrics.get("pushgateway_url"),
        vault_enabled=bool(vault.get("enabled", False)),
        vault_mount_point=vault.get("mount_point", "secret"),
    )
