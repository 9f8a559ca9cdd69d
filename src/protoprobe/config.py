# src/protoprobe/config.py
"""Backend targets and layered configuration loading

A BackendTarget names one backend family plus everything needed to reach it.
Targets are loaded once at startup using a multi-level priority mechanism:

1. Configuration file named by PROTOPROBE_CONFIG_PATH (YAML or TOML)
2. Default configuration file in the working directory
   (protoprobe.toml, then protoprobe.yaml / protoprobe.yml)
3. Environment variables DB and PORT (plus DB_HOST, DB_NAME, DB_USER,
   DB_PASSWORD, DB_TIMEOUT)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml

# Try to import tomllib (Python 3.11+) or tomli for older versions
try:
    import tomllib
except ImportError:
    import tomli as tomllib

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "PROTOPROBE_CONFIG_PATH"
DEFAULT_CONFIG_FILES = ("protoprobe.toml", "protoprobe.yaml", "protoprobe.yml")

POSTGRES = "postgres"
MYSQL = "mysql"
MARIA = "maria"

# Per-kind defaults; the option sets are what each driver needs to reach
# feature parity for the extended query protocol.
TARGET_DEFAULTS: Dict[str, Dict[str, Any]] = {
    POSTGRES: {
        'port': 5432,
        'username': 'postgres',
        'options': {
            'sslmode': 'disable',
            'prepare_threshold': 5,
            'rewrite_batched_inserts': False,
        },
    },
    MYSQL: {
        'port': 3306,
        'username': 'root',
        'options': {
            'ssl_disabled': True,
            'server_prepared': True,
            'emulate_unsupported': False,
        },
    },
    MARIA: {
        'port': 3306,
        'username': 'root',
        'options': {
            'ssl_disabled': True,
            'server_prepared': True,
        },
    },
}

DEFAULT_HOST = "127.0.0.1"
DEFAULT_DATABASE = "noria"
DEFAULT_PASSWORD = "noria"
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class BackendTarget:
    """Immutable description of one backend to probe.

    ``kind`` selects the driver; ``name`` is the label used in reports, so the
    same kind may be configured twice (e.g. Postgres directly and through a
    caching proxy).
    """

    name: str
    kind: str
    host: str = DEFAULT_HOST
    port: int = 5432
    database: str = DEFAULT_DATABASE
    username: str = ""
    password: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'options', MappingProxyType(dict(self.options)))

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Convert target to a dictionary of connection parameters."""
        config_dict = {
            'host': self.host,
            'port': self.port,
            'database': self.database,
            'username': self.username,
            'password': self.password,
            'timeout': self.timeout,
        }
        # Only include non-None values
        for key, value in self.options.items():
            if value is not None:
                config_dict[key] = value
        return config_dict

    def describe(self) -> str:
        return f"{self.name} ({self.kind}://{self.username}@{self.host}:{self.port}/{self.database})"


def build_target(name: str, config: Mapping[str, Any]) -> BackendTarget:
    """Build a BackendTarget from a configuration mapping, applying per-kind defaults."""
    kind = str(config.get('kind', name)).lower()
    if kind not in TARGET_DEFAULTS:
        raise ConfigurationError(
            f"Unknown target kind '{kind}' for target '{name}'; "
            f"expected one of {', '.join(sorted(TARGET_DEFAULTS))}"
        )
    defaults = TARGET_DEFAULTS[kind]

    options = dict(defaults['options'])
    options.update(config.get('options') or {})

    username = config.get('username', config.get('user', defaults['username']))
    if not username:
        raise ConfigurationError(f"Target '{name}' has no username")
    password = config.get('password', DEFAULT_PASSWORD)

    try:
        port = int(config.get('port', defaults['port']))
        timeout = float(config.get('timeout', DEFAULT_TIMEOUT))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid numeric setting for target '{name}': {e}")
    if timeout <= 0:
        raise ConfigurationError(f"Target '{name}' timeout must be positive, got {timeout}")

    return BackendTarget(
        name=name,
        kind=kind,
        host=config.get('host', DEFAULT_HOST),
        port=port,
        database=config.get('database', DEFAULT_DATABASE),
        username=username,
        password=password,
        timeout=timeout,
        options=options,
    )


def load_yaml_config(file_path: Path) -> Dict[str, Any]:
    with open(file_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}
    logger.info(f"Loaded configuration from {file_path}")
    return config


def load_toml_config(file_path: Path) -> Dict[str, Any]:
    with open(file_path, 'rb') as f:
        config = tomllib.load(f) or {}
    logger.info(f"Loaded configuration from {file_path}")
    return config


def load_config_from_file(config_path: Path) -> Dict[str, Any]:
    """Load configuration from file based on its extension"""
    suffix = config_path.suffix.lower().strip()
    try:
        if suffix in ('.yaml', '.yml'):
            return load_yaml_config(config_path)
        elif suffix == '.toml':
            return load_toml_config(config_path)
    except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Failed to read configuration file {config_path}: {e}")
    raise ConfigurationError(f"Unsupported configuration file format: {config_path.suffix}")


def targets_from_config(config: Mapping[str, Any]) -> List[BackendTarget]:
    """Turn the ``targets`` section of a configuration document into targets."""
    section = config.get('targets')
    if not isinstance(section, Mapping) or not section:
        raise ConfigurationError("Configuration does not contain a non-empty 'targets' mapping")
    targets = []
    for name, target_config in section.items():
        if not isinstance(target_config, Mapping):
            raise ConfigurationError(f"Target '{name}' must be a mapping")
        targets.append(build_target(str(name), target_config))
    return targets


def targets_from_environment(environ: Optional[Mapping[str, str]] = None) -> Optional[List[BackendTarget]]:
    """Build a single target from DB/PORT style environment variables, if set."""
    environ = os.environ if environ is None else environ
    kind = environ.get("DB")
    if not kind:
        return None
    config: Dict[str, Any] = {'kind': kind}
    for env_name, key in (("PORT", 'port'), ("DB_HOST", 'host'), ("DB_NAME", 'database'),
                          ("DB_USER", 'username'), ("DB_PASSWORD", 'password'),
                          ("DB_TIMEOUT", 'timeout')):
        if environ.get(env_name):
            config[key] = environ[env_name]
    logger.info("Using connection parameters from environment variables")
    return [build_target(kind.lower(), config)]


def load_targets(config_path: Optional[Path] = None,
                 environ: Optional[Mapping[str, str]] = None,
                 search_dir: Optional[Path] = None) -> List[BackendTarget]:
    """
    Load backend targets using the multi-level priority mechanism.

    Args:
        config_path: Explicit configuration file, takes precedence over everything
        environ: Environment mapping, defaults to os.environ
        search_dir: Directory searched for default configuration files

    Returns:
        Targets in configuration order

    Raises:
        ConfigurationError: No configuration source found, or a source is invalid
    """
    environ = os.environ if environ is None else environ

    # 1. Explicit path, then environment variable naming a config file
    if config_path is None and environ.get(CONFIG_PATH_ENV):
        config_path = Path(environ[CONFIG_PATH_ENV])
        logger.info(f"Using configuration file from environment variable: {config_path}")
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file {config_path} does not exist")
        return targets_from_config(load_config_from_file(config_path))

    # 2. Default config files, prioritizing TOML then YAML
    search_dir = Path.cwd() if search_dir is None else search_dir
    for file_name in DEFAULT_CONFIG_FILES:
        default_path = search_dir / file_name
        if default_path.exists():
            logger.info(f"Using default configuration file: {default_path}")
            return targets_from_config(load_config_from_file(default_path))

    # 3. Environment variables
    targets = targets_from_environment(environ)
    if targets:
        return targets

    raise ConfigurationError(
        "No backend target configured. Set DB and PORT, set "
        f"{CONFIG_PATH_ENV}, or create one of {', '.join(DEFAULT_CONFIG_FILES)}"
    )


def select_targets(targets: List[BackendTarget], names: Optional[List[str]]) -> List[BackendTarget]:
    """Pick targets by name, preserving the requested order."""
    if not names:
        return list(targets)
    by_name = {target.name: target for target in targets}
    missing = [name for name in names if name not in by_name]
    if missing:
        raise ConfigurationError(f"Unknown target(s): {', '.join(missing)}")
    return [by_name[name] for name in names]
