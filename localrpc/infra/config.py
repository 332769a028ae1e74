"""
Configuration
-------------
YAML configuration with environment variable overrides.

Example config.yaml:

    pipeline:
      default_timeout_seconds: 30
      cache_max_entries: 500
      metrics_limit: 1000
    server:
      host: 127.0.0.1
      port: 3000
      auth_enabled: false
    policies:
      default: [admin, user]
      tools:
        delete_file: [admin]
    tools:
      - name: echo
        description: Echo back the input
        schema: {type: object, properties: {message: {type: string}}, required: [message]}

Any key can be overridden with LOCALRPC_<SECTION>_<KEY>, e.g.
LOCALRPC_SERVER_PORT=8080.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import os

import yaml

from ..core.pipeline import PipelineConfig, ToolPipeline

ENV_PREFIX = "LOCALRPC_"


class ConfigManager:
    """
    Centralized configuration management.
    Loads configuration from YAML with environment variable overrides.
    """

    def __init__(self, config_path: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self._config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = dict(data or {})
        self._logger = logging.getLogger("localrpc.infra.config")

        if self._config_path is not None:
            self._load_config()

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def _load_config(self) -> None:
        """Load configuration from file."""
        if self._config_path.exists():
            with open(self._config_path, "r") as f:
                self._config = yaml.safe_load(f) or {}
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._logger.warning(f"Config file not found: {self._config_path}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Supports dot notation: 'section.key'
        Environment variables override file config; their values are parsed
        as YAML scalars so LOCALRPC_SERVER_PORT=8080 yields an int.
        """
        env_key = f"{ENV_PREFIX}{key.upper().replace('.', '_')}"
        env_value = os.getenv(env_key)
        if env_value is not None:
            return yaml.safe_load(env_value)

        value = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value (runtime only, not persisted)."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if not isinstance(config.get(part), dict):
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get an entire configuration section."""
        value = self._config.get(section)
        return value if isinstance(value, dict) else {}

    def reload(self) -> None:
        """Reload configuration from file."""
        if self._config_path is not None:
            self._load_config()


def pipeline_config_from(manager: ConfigManager) -> PipelineConfig:
    defaults = PipelineConfig()
    return PipelineConfig(
        default_timeout_seconds=manager.get("pipeline.default_timeout_seconds", defaults.default_timeout_seconds),
        cache_max_entries=int(manager.get("pipeline.cache_max_entries", defaults.cache_max_entries)),
        cache_cleanup_interval_seconds=manager.get(
            "pipeline.cache_cleanup_interval_seconds", defaults.cache_cleanup_interval_seconds
        ),
        metrics_limit=int(manager.get("pipeline.metrics_limit", defaults.metrics_limit)),
        default_allowed_roles=manager.get("policies.default", defaults.default_allowed_roles),
    )


@dataclass
class ServerConfig:
    """HTTP adapter settings."""
    host: str = "127.0.0.1"
    port: int = 3000
    auth_enabled: bool = False

    @classmethod
    def from_manager(cls, manager: ConfigManager) -> "ServerConfig":
        return cls(
            host=str(manager.get("server.host", cls.host)),
            port=int(manager.get("server.port", cls.port)),
            auth_enabled=bool(manager.get("server.auth_enabled", cls.auth_enabled)),
        )


def create_pipeline_from_config(
    manager: ConfigManager,
    handler_factory=None,
    pipeline_config: Optional[PipelineConfig] = None,
) -> ToolPipeline:
    """
    Compose a pipeline and load its policies and tools sections.

    An explicit pipeline_config (e.g. built from command-line flags) is used
    as given, without consulting the manager or the environment.
    """
    pipeline = ToolPipeline(pipeline_config or pipeline_config_from(manager))

    policies = manager.get_section("policies")
    if policies:
        pipeline.access_control.load_policies(policies)

    definitions = manager.get("tools") or []
    loaded = pipeline.load_definitions(definitions, handler_factory)
    logging.getLogger("localrpc.infra.config").info(f"Loaded {loaded} tools from config")

    return pipeline
