"""
ARM Template Backup - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (ARM_BACKUP_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./backups"
policy: parallel
cloud: AzureUSGovernment
tenant_id: ${AZURE_TENANT_ID}

environments:
  - name: ALM-TEST
    subscription_id: ${AZURE_TEST_SUBSCRIPTION_ID}
    client_id: ${AZURE_TEST_CLIENT_ID}
    client_secret_env: AZURE_TEST_CLIENT_SECRET
```
"""
import os
import re
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List

import yaml  # type: ignore[import-untyped]

from .constants import (
    ALL_CLOUDS,
    ALL_POLICIES,
    CLOUD_PUBLIC,
    DEFAULT_LOG_LEVEL,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PARALLEL_WORKERS,
    DEFAULT_RETRY_ATTEMPTS,
    POLICY_SEQUENTIAL,
)
from .models import Environment

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './arm-backup.yaml',
    './arm-backup.yml',
    '~/.arm-backup/config.yaml',
    '~/.arm-backup/config.yml',
]

# Environment variable prefix
ENV_PREFIX = 'ARM_BACKUP_'

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'ARM_BACKUP_OUTPUT',
    'log_level': 'ARM_BACKUP_LOG_LEVEL',
    'policy': 'ARM_BACKUP_POLICY',
    'max_workers': 'ARM_BACKUP_MAX_WORKERS',
    'cloud': 'ARM_BACKUP_CLOUD',
    'tenant_id': 'ARM_BACKUP_TENANT_ID',
    'export.retry_attempts': 'ARM_BACKUP_RETRY_ATTEMPTS',
}

_INT_KEYS = ('max_workers', 'export.retry_attempts')

DEFAULTS: Dict[str, Any] = {
    'output': DEFAULT_OUTPUT_DIR,
    'log_level': DEFAULT_LOG_LEVEL,
    'policy': POLICY_SEQUENTIAL,
    'max_workers': DEFAULT_PARALLEL_WORKERS,
    'cloud': CLOUD_PUBLIC,
    'export': {'retry_attempts': DEFAULT_RETRY_ATTEMPTS},
    'environments': [],
}


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    keys = key_path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # Security check: warn if config file has loose permissions
    import stat
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):  # Group or world access
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        if config_key in _INT_KEYS:
            try:
                value = int(value)
            except ValueError:
                logger.warning(f"Ignoring {env_var}={value!r}: expected an integer")
                continue
        _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones.

    Lists (such as `environments`) are replaced, never concatenated.
    """
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'output': 'output',
        'log_level': 'log_level',
        'policy': 'policy',
        'max_workers': 'max_workers',
        'cloud': 'cloud',
        'retry_attempts': 'export.retry_attempts',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            _set_nested(config, config_key, value)

    return config


def config_to_args(config: Dict[str, Any], args) -> None:
    """Apply merged config values back onto the argparse args object."""
    for key in ('output', 'log_level', 'policy', 'max_workers'):
        if key in config and hasattr(args, key):
            setattr(args, key, config[key])

    retry_attempts = _get_nested(config, 'export.retry_attempts')
    if retry_attempts is not None and hasattr(args, 'retry_attempts'):
        args.retry_attempts = retry_attempts


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check a merged config for values the backup cannot run with.

    Raises:
        ValueError: On an unknown policy or cloud, a bad worker/retry count,
            or a malformed environment entry.
    """
    policy = config.get('policy')
    if policy not in ALL_POLICIES:
        raise ValueError(f"Unknown policy '{policy}'. Expected one of: {', '.join(ALL_POLICIES)}")

    cloud = config.get('cloud')
    if cloud not in ALL_CLOUDS:
        raise ValueError(f"Unknown cloud '{cloud}'. Expected one of: {', '.join(ALL_CLOUDS)}")

    if int(config.get('max_workers', 1)) < 1:
        raise ValueError("max_workers must be at least 1")

    if int(_get_nested(config, 'export.retry_attempts', 1)) < 1:
        raise ValueError("export.retry_attempts must be at least 1")

    environments = config.get('environments') or []
    if not isinstance(environments, list):
        raise ValueError("'environments' must be a list")

    seen = set()
    for entry in environments:
        if not isinstance(entry, dict) or not entry.get('name'):
            raise ValueError(f"Every environment needs a name: {entry!r}")
        name = entry['name']
        if name in seen:
            raise ValueError(f"Duplicate environment name: {name}")
        seen.add(name)
        env_cloud = entry.get('cloud')
        if env_cloud and env_cloud not in ALL_CLOUDS:
            raise ValueError(f"Environment {name}: unknown cloud '{env_cloud}'")


def load_environments(config: Dict[str, Any]) -> List[Environment]:
    """
    Build Environment objects from the `environments` list.

    Top-level `cloud` and `tenant_id` act as defaults for every entry.
    """
    default_cloud = config.get('cloud', CLOUD_PUBLIC)
    default_tenant = config.get('tenant_id') or None

    environments = []
    for entry in config.get('environments') or []:
        enabled = entry.get('enabled', True)
        if isinstance(enabled, str):
            enabled = enabled.lower() in ('true', '1', 'yes')

        environments.append(Environment(
            name=str(entry['name']),
            subscription_id=str(entry.get('subscription_id') or '').strip(),
            cloud=entry.get('cloud') or default_cloud,
            tenant_id=entry.get('tenant_id') or default_tenant,
            client_id=entry.get('client_id') or None,
            client_secret_env=entry.get('client_secret_env') or None,
            enabled=bool(enabled),
        ))

    return environments


def load_config(args) -> Dict[str, Any]:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables
    4. Built-in defaults

    Returns merged config dict.
    """
    configs = [DEFAULTS]

    # 1. Environment variables (lowest priority after defaults)
    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    # 2. Config file
    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    # 3. CLI arguments (highest priority)
    configs.append(args_to_config(args))

    merged = merge_configs(*configs)
    validate_config(merged)

    config_to_args(merged, args)

    return merged


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# ARM Template Backup Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory; one folder per environment is created below it
output: "."

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

# How environments are processed: sequential or parallel
policy: sequential

# Thread count for the parallel policy
max_workers: 4

# Azure cloud: AzureCloud, AzureUSGovernment or AzureChinaCloud
cloud: AzureUSGovernment

# Entra ID tenant shared by all environments (can be overridden per environment)
tenant_id: ${AZURE_TENANT_ID}

export:
  # Attempts per export method. 1 means each method is tried exactly once;
  # higher values retry transient network failures with exponential backoff.
  retry_attempts: 1

# Client secrets are never put in this file. Name the environment variable
# that holds each secret instead. Environments without client settings use
# DefaultAzureCredential (az login, managed identity, workload identity).
environments:
  - name: ALM-TEST
    subscription_id: ${AZURE_TEST_SUBSCRIPTION_ID}
    client_id: ${AZURE_TEST_CLIENT_ID}
    client_secret_env: AZURE_TEST_CLIENT_SECRET

  - name: ALM-DEV
    subscription_id: ${AZURE_DEV_SUBSCRIPTION_ID}
    client_id: ${AZURE_DEV_CLIENT_ID}
    client_secret_env: AZURE_DEV_CLIENT_SECRET

  - name: ALM-PREPROD
    subscription_id: ${AZURE_PRE_SUBSCRIPTION_ID}
    client_id: ${AZURE_PRE_CLIENT_ID}
    client_secret_env: AZURE_PRE_CLIENT_SECRET

  - name: ALM-PROD
    subscription_id: ${AZURE_PROD_SUBSCRIPTION_ID}
    client_id: ${AZURE_PROD_CLIENT_ID}
    client_secret_env: AZURE_PROD_CLIENT_SECRET
    # enabled: false  # skip this environment
'''
