"""
Configuration Manager Module
Handles loading and accessing sync configuration from YAML files and environment variables.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_WORKER_COUNT = 5
SYNC_MODES = ('full', 'delta')

# Used when no config directory is present; mirrors config/config.yaml.
DEFAULT_CONFIG_YAML = """
jira:
  base_url: ${JIRA_BASE_URL:-}
  email: ${JIRA_EMAIL:-}
  api_token: ${JIRA_API_TOKEN:-}
  timeout: 30
  max_attempts: 4
  initial_backoff: 1
  max_backoff: 30
  backoff_factor: 2

database:
  url: ${DATABASE_URL:-}
  pool_size: 5
  max_overflow: 10
  pool_timeout: 30

sync:
  mode: ${BATCH_SYNC_MODE:-full}
  worker_count: ${BATCH_WORKER_COUNT:-5}
  timezone: ${SYNC_TIMEZONE:-Asia/Tokyo}
  delta_fallback_minutes: 60

metrics:
  namespace: ${METRICS_NAMESPACE:-}

logging:
  level: ${LOG_LEVEL:-INFO}
  format: '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
  file: ${LOG_FILE:-}
  max_bytes: 10485760
  backup_count: 5

scheduler:
  interval: 1h

api:
  host: 0.0.0.0
  port: ${API_PORT:-6922}
"""


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class JiraCredentials:
    """Validated Jira connection settings."""
    base_url: str
    email: str
    api_token: str


class ConfigManager:
    """Manages sync configuration from YAML files and environment variables."""

    _instance = None
    _config: Dict = None

    def __new__(cls):
        """Singleton pattern for configuration."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize configuration if not already loaded."""
        if self._config is None:
            self._load_configuration()

    def _load_configuration(self) -> None:
        """Load the configuration file, falling back to the embedded defaults."""
        load_dotenv()

        config_dir = self._find_config_dir()
        config_path = config_dir / 'config.yaml' if config_dir else None

        if config_path is not None and config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                content = f.read()
        else:
            content = DEFAULT_CONFIG_YAML

        self._config = yaml.safe_load(self._substitute_env_vars(content)) or {}

    def _find_config_dir(self) -> Optional[Path]:
        """Find the configuration directory, if any."""
        env_config_dir = os.getenv('CONFIG_DIR')
        if env_config_dir:
            return Path(env_config_dir)

        possible_paths = [
            Path(__file__).parent.parent / 'config',
            Path.cwd() / 'config',
            Path('/app/config'),
        ]

        for path in possible_paths:
            if path.exists():
                return path

        return None

    def _substitute_env_vars(self, content: str) -> str:
        """
        Substitute environment variables in string.

        Supports:
        - ${VAR_NAME} - Required variable
        - ${VAR_NAME:-default} - Variable with default value
        """
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2)

            value = os.getenv(var_name)
            if value:
                return value
            elif default_value is not None:
                return default_value
            else:
                return match.group(0)

        return re.sub(pattern, replacer, content)

    # ========================================
    # Section Getters
    # ========================================

    def get_jira_config(self) -> Dict:
        """Get Jira API configuration."""
        return self._config.get('jira') or {}

    def get_database_config(self) -> Dict:
        """Get database configuration."""
        return self._config.get('database') or {}

    def get_sync_config(self) -> Dict:
        """Get sync engine configuration."""
        return self._config.get('sync') or {}

    def get_metrics_config(self) -> Dict:
        """Get metrics configuration."""
        return self._config.get('metrics') or {}

    def get_logging_config(self) -> Dict:
        """Get logging configuration."""
        return self._config.get('logging') or {}

    def get_scheduler_config(self) -> Dict:
        """Get scheduler configuration."""
        return self._config.get('scheduler') or {}

    def get_api_config(self) -> Dict:
        """Get ops API configuration."""
        return self._config.get('api') or {}

    # ========================================
    # Validated Getters
    # ========================================

    def get_jira_credentials(self) -> JiraCredentials:
        """
        Get Jira credentials, validating that all of them are present.

        Raises:
            ConfigurationError: Listing every missing environment variable
        """
        jira_config = self.get_jira_config()
        base_url = _clean(jira_config.get('base_url')).rstrip('/')
        email = _clean(jira_config.get('email'))
        api_token = _clean(jira_config.get('api_token'))

        missing = []
        if not base_url:
            missing.append('JIRA_BASE_URL')
        if not email:
            missing.append('JIRA_EMAIL')
        if not api_token:
            missing.append('JIRA_API_TOKEN')

        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        return JiraCredentials(base_url=base_url, email=email, api_token=api_token)

    def get_database_url(self) -> str:
        """Get the database URL (DATABASE_URL)."""
        url = _clean(self.get_database_config().get('url'))
        if not url:
            raise ConfigurationError("DATABASE_URL environment variable is required")
        return url

    def get_worker_count(self) -> int:
        """Get the fan-out worker count; non-positive values fall back to the default."""
        raw = self.get_sync_config().get('worker_count', DEFAULT_WORKER_COUNT)
        try:
            count = int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid BATCH_WORKER_COUNT: {raw!r}")
        return count if count > 0 else DEFAULT_WORKER_COUNT

    def get_sync_mode(self) -> str:
        """Get the sync mode ('full' or 'delta')."""
        mode = _clean(self.get_sync_config().get('mode')).lower() or 'full'
        if mode not in SYNC_MODES:
            raise ConfigurationError(f"Invalid BATCH_SYNC_MODE: {mode!r} (expected full or delta)")
        return mode

    def get_timezone_name(self) -> str:
        """Get the operator calendar timezone name."""
        return _clean(self.get_sync_config().get('timezone')) or 'Asia/Tokyo'

    def get_metrics_namespace(self) -> str:
        """Get the metrics namespace; empty disables metrics."""
        return _clean(self.get_metrics_config().get('namespace'))

    def reload(self) -> None:
        """Reload configuration from environment and files."""
        self._config = None
        self._load_configuration()


def _clean(value) -> str:
    """Normalize a YAML scalar into a stripped string."""
    if value is None:
        return ''
    return str(value).strip()
