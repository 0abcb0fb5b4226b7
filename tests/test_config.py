"""
Tests for armlib/config.py.

Covers:
- YAML config loading with ${VAR} substitution
- ARM_BACKUP_* environment variables
- Merge priority (CLI > file > env > defaults)
- Config validation
- Environment list parsing
"""
import argparse
import os
import sys
import tempfile

import pytest
import yaml

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from armlib.config import (
    generate_sample_config,
    load_config,
    load_config_file,
    load_env_config,
    load_environments,
    merge_configs,
    validate_config,
)


def make_args(**kwargs) -> argparse.Namespace:
    defaults = {
        'config': None,
        'output': None,
        'log_level': None,
        'policy': None,
        'max_workers': None,
        'cloud': None,
        'retry_attempts': None,
    }
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


@pytest.fixture
def config_dir(monkeypatch):
    """Empty working directory with no ARM_BACKUP_* variables set."""
    for var in list(os.environ):
        if var.startswith('ARM_BACKUP_'):
            monkeypatch.delenv(var)
    with tempfile.TemporaryDirectory() as tmp:
        monkeypatch.chdir(tmp)
        yield tmp


def write_config(folder: str, data: dict, name: str = "arm-backup.yaml") -> str:
    path = os.path.join(folder, name)
    with open(path, 'w') as f:
        yaml.safe_dump(data, f)
    os.chmod(path, 0o600)
    return path


class TestLoadConfigFile:
    """Tests for load_config_file."""

    def test_missing_file(self, config_dir):
        with pytest.raises(FileNotFoundError):
            load_config_file(os.path.join(config_dir, "nope.yaml"))

    def test_env_substitution(self, config_dir, monkeypatch):
        monkeypatch.setenv('AZURE_TEST_SUBSCRIPTION_ID', 'sub-from-env')
        path = write_config(config_dir, {
            'environments': [{
                'name': 'ALM-TEST',
                'subscription_id': '${AZURE_TEST_SUBSCRIPTION_ID}',
                'client_id': '${MISSING_CLIENT_ID:-fallback-client}',
            }]
        })

        config = load_config_file(path)

        env = config['environments'][0]
        assert env['subscription_id'] == 'sub-from-env'
        assert env['client_id'] == 'fallback-client'

    def test_non_mapping_rejected(self, config_dir):
        path = os.path.join(config_dir, "list.yaml")
        with open(path, 'w') as f:
            f.write("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_config_file(path)


class TestLoadEnvConfig:
    """Tests for load_env_config."""

    def test_reads_prefixed_variables(self, config_dir, monkeypatch):
        monkeypatch.setenv('ARM_BACKUP_POLICY', 'parallel')
        monkeypatch.setenv('ARM_BACKUP_MAX_WORKERS', '8')
        monkeypatch.setenv('ARM_BACKUP_RETRY_ATTEMPTS', '3')

        config = load_env_config()

        assert config['policy'] == 'parallel'
        assert config['max_workers'] == 8
        assert config['export']['retry_attempts'] == 3

    def test_bad_integer_ignored(self, config_dir, monkeypatch):
        monkeypatch.setenv('ARM_BACKUP_MAX_WORKERS', 'many')
        assert 'max_workers' not in load_env_config()


class TestMergeConfigs:
    """Tests for merge_configs."""

    def test_later_wins(self):
        merged = merge_configs({'policy': 'sequential'}, {'policy': 'parallel'})
        assert merged['policy'] == 'parallel'

    def test_nested_merge(self):
        merged = merge_configs(
            {'export': {'retry_attempts': 1, 'other': True}},
            {'export': {'retry_attempts': 3}},
        )
        assert merged['export'] == {'retry_attempts': 3, 'other': True}

    def test_lists_replaced(self):
        merged = merge_configs(
            {'environments': [{'name': 'A'}]},
            {'environments': [{'name': 'B'}]},
        )
        assert merged['environments'] == [{'name': 'B'}]

    def test_none_ignored(self):
        merged = merge_configs({'output': './a'}, {'output': None})
        assert merged['output'] == './a'


class TestValidateConfig:
    """Tests for validate_config."""

    def base(self, **overrides):
        config = {
            'policy': 'sequential',
            'cloud': 'AzureCloud',
            'max_workers': 4,
            'export': {'retry_attempts': 1},
            'environments': [],
        }
        config.update(overrides)
        return config

    def test_valid(self):
        validate_config(self.base())

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="policy"):
            validate_config(self.base(policy='round-robin'))

    def test_unknown_cloud(self):
        with pytest.raises(ValueError, match="cloud"):
            validate_config(self.base(cloud='AzureGermanCloud'))

    def test_zero_workers(self):
        with pytest.raises(ValueError):
            validate_config(self.base(max_workers=0))

    def test_zero_retry_attempts(self):
        with pytest.raises(ValueError):
            validate_config(self.base(export={'retry_attempts': 0}))

    def test_duplicate_environment(self):
        with pytest.raises(ValueError, match="Duplicate"):
            validate_config(self.base(environments=[{'name': 'A'}, {'name': 'A'}]))

    def test_environment_without_name(self):
        with pytest.raises(ValueError):
            validate_config(self.base(environments=[{'subscription_id': 'x'}]))


class TestLoadEnvironments:
    """Tests for load_environments."""

    def test_defaults_applied(self):
        config = {
            'cloud': 'AzureUSGovernment',
            'tenant_id': 'tenant-1',
            'environments': [
                {'name': 'ALM-TEST', 'subscription_id': ' sub-1 '},
                {'name': 'ALM-PROD', 'subscription_id': 'sub-2', 'cloud': 'AzureCloud',
                 'tenant_id': 'tenant-2', 'enabled': 'false'},
            ],
        }

        test_env, prod_env = load_environments(config)

        assert test_env.subscription_id == 'sub-1'
        assert test_env.cloud == 'AzureUSGovernment'
        assert test_env.tenant_id == 'tenant-1'
        assert test_env.enabled is True

        assert prod_env.cloud == 'AzureCloud'
        assert prod_env.tenant_id == 'tenant-2'
        assert prod_env.enabled is False

    def test_missing_subscription_is_empty(self):
        (env,) = load_environments({'environments': [{'name': 'ALM-DEV', 'subscription_id': None}]})
        assert env.subscription_id == ''

    def test_no_environments(self):
        assert load_environments({}) == []


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self, config_dir):
        args = make_args()

        config = load_config(args)

        assert config['policy'] == 'sequential'
        assert config['cloud'] == 'AzureCloud'
        assert args.output == '.'
        assert args.max_workers == 4
        assert args.retry_attempts == 1

    def test_priority(self, config_dir, monkeypatch):
        monkeypatch.setenv('ARM_BACKUP_POLICY', 'parallel')
        monkeypatch.setenv('ARM_BACKUP_OUTPUT', './from-env')
        path = write_config(config_dir, {'output': './from-file', 'max_workers': 2})
        args = make_args(config=path, max_workers=6)

        config = load_config(args)

        assert config['policy'] == 'parallel'  # env only
        assert config['output'] == './from-file'  # file beats env
        assert config['max_workers'] == 6  # CLI beats file
        assert args.output == './from-file'

    def test_default_config_location(self, config_dir):
        write_config(config_dir, {'environments': [{'name': 'ALM-TEST', 'subscription_id': 'sub'}]})

        config = load_config(make_args())

        assert [e['name'] for e in config['environments']] == ['ALM-TEST']

    def test_invalid_policy_rejected(self, config_dir):
        path = write_config(config_dir, {'policy': 'random'})
        with pytest.raises(ValueError):
            load_config(make_args(config=path))


class TestGenerateSampleConfig:
    """Tests for generate_sample_config."""

    def test_is_valid_yaml(self):
        config = yaml.safe_load(generate_sample_config())

        assert config['policy'] == 'sequential'
        names = [env['name'] for env in config['environments']]
        assert names == ['ALM-TEST', 'ALM-DEV', 'ALM-PREPROD', 'ALM-PROD']
        for env in config['environments']:
            assert 'client_secret' not in env
