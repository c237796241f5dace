"""
Configuration for qbt-automations

Settings come from config.yml in CONFIG_DIR, with ${VAR:-default} expansion.
Individual keys can be overridden, first match wins:
1. CLI arguments
2. <ENV_VAR>_FILE (value read from a file, for Docker secrets)
3. <ENV_VAR>
4. config.yml
5. Built-in default
"""

import os
import re
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional

from qbt_automations.errors import ConfigurationError


# Dot-notation config key -> environment variable
ENV_VAR_MAP = {
    # Server configuration
    'server.host': 'QBT_AUTOMATIONS_SERVER_HOST',
    'server.port': 'QBT_AUTOMATIONS_SERVER_PORT',
    'server.api_key': 'QBT_AUTOMATIONS_SERVER_API_KEY',
    'server.workers': 'QBT_AUTOMATIONS_SERVER_WORKERS',

    # Client configuration
    'client.server_url': 'QBT_AUTOMATIONS_CLIENT_SERVER_URL',
    'client.api_key': 'QBT_AUTOMATIONS_CLIENT_API_KEY',

    # Storage
    'database.path': 'QBT_AUTOMATIONS_DATABASE_PATH',
    'activity.backend': 'QBT_AUTOMATIONS_ACTIVITY_BACKEND',
    'activity.redis_url': 'QBT_AUTOMATIONS_ACTIVITY_REDIS_URL',
    'activity.retention_days': 'QBT_AUTOMATIONS_ACTIVITY_RETENTION_DAYS',
    'activity.reannounce_history': 'QBT_AUTOMATIONS_ACTIVITY_REANNOUNCE_HISTORY',

    # Engine & scheduler
    'engine.dry_run': 'QBT_AUTOMATIONS_DRY_RUN',
    'engine.scan_interval': 'QBT_AUTOMATIONS_SCAN_INTERVAL',
    'engine.max_workers': 'QBT_AUTOMATIONS_MAX_WORKERS',
    'reannounce.tick_interval': 'QBT_AUTOMATIONS_REANNOUNCE_TICK_INTERVAL',
    'reannounce.debounce_window': 'QBT_AUTOMATIONS_REANNOUNCE_DEBOUNCE_WINDOW',

    # Rules & logging
    'rules.file': 'QBT_AUTOMATIONS_RULES_FILE',
    'config.dir': 'QBT_AUTOMATIONS_CONFIG_DIR',
    'logging.level': 'QBT_AUTOMATIONS_LOG_LEVEL',
    'logging.file': 'QBT_AUTOMATIONS_LOG_FILE',
    'logging.trace_mode': 'QBT_AUTOMATIONS_LOG_TRACE_MODE',
}

DEFAULT_DATABASE_PATH = '/config/qbt-automations.db'
DEFAULT_RETENTION_DAYS = 7

TRUE_VALUES = ('true', '1', 'yes', 'on')
FALSE_VALUES = ('false', '0', 'no', 'off')

ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def get_nested_config(config: Dict[str, Any], key: str) -> Optional[Any]:
    """
    Walk a dotted key such as 'activity.retention_days' through nested dicts

    Returns:
        The value, or None when any segment is missing
    """
    node = config

    for part in key.split('.'):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]

    return node


def parse_bool(value: Any) -> bool:
    """Interpret YAML/env style flags ('yes', 'on', 1, True ...) as a bool"""
    if value is None:
        return False

    if isinstance(value, (bool, int)):
        return bool(value)

    if isinstance(value, str):
        return value.strip().lower() in TRUE_VALUES

    return bool(value)


def parse_int(value: Any, default: int = 0) -> int:
    """
    Interpret a config or env value as an int

    Args:
        value: Raw value (int, numeric string or None)
        default: Returned for None or anything unparseable

    Returns:
        Integer value
    """
    if value is None:
        return default

    if isinstance(value, (bool, int)):
        return int(value)

    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return default


def _env_flag(name: str) -> Optional[bool]:
    """Explicit on/off from an environment variable, None if unset or unrecognised"""
    raw = os.environ.get(name, '').strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    return None


def _read_secret_file(file_var: str) -> Optional[str]:
    """Read the file named by a *_FILE variable, logging and returning None on failure"""
    file_path = os.environ[file_var]
    try:
        with open(file_path, 'r') as f:
            content = f.read().strip()
    except FileNotFoundError:
        logging.warning(f"{file_var} points to a missing file: {file_path}")
        return None
    except PermissionError:
        logging.warning(f"{file_var} file is not readable: {file_path}")
        return None
    except OSError as e:
        logging.warning(f"Could not read {file_var} ({file_path}): {e}")
        return None

    logging.debug(f"{file_var} read from {file_path}")
    return content


def resolve_config(
    cli_value: Optional[Any],
    env_var: str,
    config: Dict[str, Any],
    config_key: str,
    default: Optional[Any] = None
) -> Any:
    """
    Resolve one setting across CLI, environment, config.yml and default

    A <env_var>_FILE variable wins over <env_var> so secrets can be mounted
    as files. An unreadable file is logged and resolution continues.

    Args:
        cli_value: Value given on the command line, None when absent
        env_var: Environment variable name, without the _FILE suffix
        config: Parsed config.yml
        config_key: Dotted key into config.yml
        default: Fallback when nothing else is set

    Returns:
        Resolved value (strings from env/file are not converted)
    """
    if cli_value is not None:
        return cli_value

    file_var = f"{env_var}_FILE"
    if file_var in os.environ:
        content = _read_secret_file(file_var)
        if content is not None:
            return content

    if env_var in os.environ:
        logging.debug(f"{config_key} taken from {env_var}")
        return os.environ[env_var]

    value = get_nested_config(config, config_key) if config else None
    if value is not None:
        logging.debug(f"{config_key} taken from config.yml")
        return value

    logging.debug(f"{config_key} not set, using default {default!r}")
    return default


def expand_env_vars(value: Any) -> Any:
    """
    Substitute ${VAR} and ${VAR:-fallback} in every string of a parsed YAML tree

    Unset variables without a fallback become empty strings.
    """
    if isinstance(value, str):
        return ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ''), value)

    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Parse a YAML file whose top level must be a mapping

    Raises:
        ConfigurationError: Missing, unreadable, empty, malformed or non-mapping file
    """
    if not file_path.exists():
        raise ConfigurationError(str(file_path), "File does not exist")

    try:
        with open(file_path, 'r') as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(file_path), f"Invalid YAML syntax: {e}")
    except PermissionError:
        raise ConfigurationError(str(file_path), "Permission denied - cannot read file")
    except OSError as e:
        raise ConfigurationError(str(file_path), f"Cannot read file: {e}")

    if content is None:
        raise ConfigurationError(str(file_path), "File is empty")

    if not isinstance(content, dict):
        raise ConfigurationError(str(file_path), "Top level must be a mapping")

    return content


class Config:
    """
    Parsed config.yml plus the qBittorrent instance list

    Args:
        config_dir: Directory holding config.yml and the optional rules.yml.
                    Falls back to $CONFIG_DIR, then /config.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir or os.environ.get('CONFIG_DIR', '/config'))
        self.config_file = self.config_dir / 'config.yml'
        self.rules_file = self.config_dir / 'rules.yml'

        self._load_config()
        self.instances = self._load_instances()

    def _load_config(self):
        logging.debug(f"Reading {self.config_file}")
        self.config = expand_env_vars(load_yaml_file(self.config_file))

    def _in_config_dir(self, path: str) -> Path:
        """Anchor relative paths at the config directory"""
        resolved = Path(path)
        return resolved if resolved.is_absolute() else self.config_dir / resolved

    def _load_instances(self) -> List[Dict[str, Any]]:
        """
        Build the instance list

        Accepts an 'instances' list, or a single legacy 'qbittorrent' block
        which becomes instance 1.
        """
        raw = self.config.get('instances')

        if raw is None:
            legacy = self.config.get('qbittorrent')
            if not legacy:
                raise ConfigurationError(
                    str(self.config_file),
                    "No 'instances' defined"
                )
            raw = [dict(legacy, id=1, name=legacy.get('name', 'default'))]

        if not isinstance(raw, list):
            raise ConfigurationError(str(self.config_file), "'instances' must be a list")

        instances = []
        seen = set()
        for i, entry in enumerate(raw):
            if not isinstance(entry, dict):
                raise ConfigurationError(str(self.config_file), f"Instance #{i+1} must be a dictionary")

            instance_id = parse_int(entry.get('id'), default=-1)
            if instance_id <= 0:
                raise ConfigurationError(
                    str(self.config_file),
                    f"Instance #{i+1} needs a positive integer 'id'"
                )
            if instance_id in seen:
                raise ConfigurationError(str(self.config_file), f"Duplicate instance id: {instance_id}")
            seen.add(instance_id)

            if not entry.get('host'):
                raise ConfigurationError(
                    str(self.config_file),
                    f"Instance {instance_id} missing required field: 'host'"
                )

            instances.append({
                'id': instance_id,
                'name': entry.get('name') or f"instance-{instance_id}",
                'host': entry['host'],
                'username': entry.get('username', entry.get('user', 'admin')),
                'password': entry.get('password', entry.get('pass', '')),
            })

        logging.debug(f"Loaded {len(instances)} instance(s)")
        return instances

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Configuration key (e.g., 'engine.scan_interval')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = get_nested_config(self.config, key)
        return default if value is None else value

    def get_database_path(self) -> Path:
        """SQLite file holding rules, settings and (by default) activity"""
        return self._in_config_dir(resolve_config(
            None, ENV_VAR_MAP['database.path'], self.config, 'database.path', default=DEFAULT_DATABASE_PATH
        ))

    def get_instances(self) -> List[Dict[str, Any]]:
        return self.instances

    def get_seed_rules(self) -> List[Dict[str, Any]]:
        """
        Rules from rules.yml, used by --import-rules

        Returns:
            List of rule dictionaries (empty if rules.yml does not exist)

        Raises:
            ConfigurationError: If 'rules' is not a list of named mappings
        """
        if not self.rules_file.exists():
            return []

        raw_rules = load_yaml_file(self.rules_file).get('rules', [])

        if not isinstance(raw_rules, list):
            raise ConfigurationError(str(self.rules_file), "'rules' must be a list")

        for i, rule in enumerate(raw_rules, start=1):
            if not isinstance(rule, dict):
                raise ConfigurationError(str(self.rules_file), f"Rule #{i} must be a dictionary")
            if 'name' not in rule:
                raise ConfigurationError(str(self.rules_file), f"Rule #{i} missing required field: 'name'")

        return expand_env_vars(raw_rules)

    def is_dry_run(self) -> bool:
        """DRY_RUN env wins over engine.dry_run"""
        override = _env_flag('DRY_RUN')
        return parse_bool(self.get('engine.dry_run', False)) if override is None else override

    def get_log_level(self) -> str:
        return os.environ.get('LOG_LEVEL', self.get('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Path:
        return self._in_config_dir(os.environ.get('LOG_FILE', self.get('logging.file', 'logs/qbt-automations.log')))

    def get_trace_mode(self) -> bool:
        """Detailed log format (module/function/line); TRACE_MODE env wins over logging.trace_mode"""
        override = _env_flag('TRACE_MODE')
        return parse_bool(self.get('logging.trace_mode', False)) if override is None else override


def load_config(config_dir: Optional[Path] = None) -> Config:
    return Config(config_dir)
