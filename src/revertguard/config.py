#!/usr/bin/env python3
"""
Configuration - Default settings, YAML loading and logging setup.
"""

import copy
import logging
import os
import sys
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = "/etc/revertguard/config.yaml"


def get_default_config() -> Dict[str, Any]:
    """Return default configuration."""
    return {
        'global': {
            'log_level': 'INFO',
            'log_file': '/var/log/revertguard/revertguard.log',
            'state_dir': '/var/lib/revertguard',
            'pid_file': '/var/run/revertguard.pid'
        },
        'backup': {
            'backup_dir': '/var/backups/revertguard',
            'retention_days': 30,
            'min_free_bytes': 100 * 1024 * 1024
        },
        'snapshot': {
            'snapshot_dir': '/var/backups/revertguard/snapshots',
            'capture_state': True,
            'critical_files': [
                '/etc/ssh/sshd_config',
                '/etc/sysctl.conf',
                '/etc/security/limits.conf',
                '/etc/fstab',
                '/etc/hosts',
                '/etc/hostname',
                '/etc/resolv.conf',
                '/etc/nsswitch.conf',
                '/etc/sudoers',
                '/etc/group',
                '/etc/passwd',
                '/etc/shadow',
                '/etc/gshadow'
            ],
            'critical_dirs': [
                '/etc/pam.d',
                '/etc/network'
            ],
            'post_restore_commands': [
                ['sysctl', '-p', '/etc/sysctl.conf']
            ]
        },
        'transaction': {
            'rollback_on_failure': True,
            'command_timeout': 30,
            'history_limit': 20
        },
        'watchdog': {
            'mode': 'process',
            'default_deadline': 120,
            'poll_interval': 1.0
        },
        'safe_apply': {
            'settle_time': 3,
            'preflight_check': True
        },
        'profiles': {
            'sshd': {
                'deadline': 60,
                'validator': {
                    'type': 'command',
                    'argv': ['/usr/sbin/sshd', '-t', '-f', '{path}']
                },
                'reload': {
                    'type': 'signal',
                    'pidfile': '/var/run/sshd.pid',
                    'signal': 'SIGHUP',
                    'fallback': {'type': 'service', 'service': 'ssh', 'action': 'reload'}
                },
                'liveness': {
                    'type': 'tcp',
                    'host': '127.0.0.1',
                    'port': 22,
                    'timeout': 10,
                    'expect_banner': 'SSH-'
                }
            },
            'firewall': {
                'deadline': 300,
                'validator': {
                    'type': 'command',
                    'argv': ['iptables-restore', '--test', '{path}']
                },
                'reload': {
                    'type': 'command',
                    'argv': ['iptables-restore', '{path}']
                },
                'liveness': {
                    'type': 'tcp',
                    'host': '127.0.0.1',
                    'port': 22,
                    'timeout': 10
                }
            }
        },
        'daemon': {
            'poll_interval': 5,
            'retention_schedule': '0 3 * * *',
            'recover_on_start': True
        }
    }


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file, layered over the defaults."""
    config_path = config_path or DEFAULT_CONFIG_PATH
    defaults = get_default_config()

    try:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return defaults
    except yaml.YAMLError as e:
        raise RuntimeError(f"Error parsing configuration file: {e}")

    if not isinstance(user_config, dict):
        raise RuntimeError(f"Configuration file must contain a mapping: {config_path}")

    config = merge_config(defaults, user_config)
    config['config_path'] = config_path
    return config


def write_default_config(config_path: str) -> None:
    """Create default configuration file."""
    config_dir = os.path.dirname(config_path)
    if config_dir:
        os.makedirs(config_dir, exist_ok=True)

    with open(config_path, 'w') as f:
        yaml.dump(get_default_config(), f, default_flow_style=False, indent=2)


def state_path(config: Dict[str, Any], *parts: str) -> str:
    """Build a path below the configured state directory."""
    state_dir = config.get('global', {}).get('state_dir', '/var/lib/revertguard')
    return os.path.join(state_dir, *parts)


def setup_logging(config: Dict[str, Any], verbose: bool = False,
                  console_only: bool = False) -> None:
    """Setup logging configuration."""
    global_config = config.get('global', {})
    level_name = 'DEBUG' if verbose else global_config.get('log_level', 'INFO')
    log_level = getattr(logging, str(level_name).upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = global_config.get('log_file')

    if log_file and not console_only:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
