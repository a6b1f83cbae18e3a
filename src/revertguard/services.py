#!/usr/bin/env python3
"""
Service Controller - Starts, stops and reloads system services.
"""

import logging
import shutil
import subprocess
from typing import Any, Dict, List, Optional


class ServiceController:
    """Drives services through systemd, falling back to SysV init scripts."""

    VALID_ACTIONS = ('start', 'stop', 'restart', 'reload')

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """Initialize service controller."""
        self.config = config or {}
        self.logger = logging.getLogger(__name__)
        self.timeout = self.config.get('command_timeout', 30)
        self.init_system = self._detect_init_system()

        self.logger.debug(f"Service controller using init system: {self.init_system}")

    def _detect_init_system(self) -> str:
        """Detect which init system manages services."""
        if shutil.which('systemctl'):
            return 'systemd'
        if shutil.which('service'):
            return 'sysv'
        return 'unknown'

    def _build_command(self, service: str, action: str) -> List[str]:
        """Build the command line for a service action."""
        if self.init_system == 'systemd':
            return ['systemctl', action, service]
        return ['service', service, action]

    def _run(self, command: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(command, capture_output=True, text=True,
                              check=True, timeout=self.timeout)

    def is_active(self, service: str) -> bool:
        """Check whether a service is currently running."""
        if self.init_system == 'systemd':
            command = ['systemctl', 'is-active', '--quiet', service]
        else:
            command = ['service', service, 'status']

        try:
            result = subprocess.run(command, capture_output=True, text=True,
                                    check=False, timeout=self.timeout)
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Could not query state of {service}: {e}")
            return False

    def run_action(self, service: str, action: str) -> bool:
        """Run start/stop/restart/reload for a service."""
        if action not in self.VALID_ACTIONS:
            self.logger.error(f"Unknown service action: {action}")
            return False

        command = self._build_command(service, action)
        self.logger.info(f"Running service action: {' '.join(command)}")

        try:
            self._run(command)
            return True
        except subprocess.CalledProcessError as e:
            self.logger.error(f"Failed to {action} service {service}: {e.stderr}")
            return False
        except subprocess.TimeoutExpired:
            self.logger.error(f"Service {action} timed out for {service}")
            return False
        except OSError as e:
            self.logger.error(f"Error running {action} for {service}: {e}")
            return False

    def current_state(self, service: str) -> str:
        """Return 'running' or 'stopped'."""
        return 'running' if self.is_active(service) else 'stopped'

    def ensure_state(self, service: str, state: str) -> bool:
        """Drive a service to the running or stopped state."""
        if state == 'running':
            return self.run_action(service, 'start')
        if state == 'stopped':
            return self.run_action(service, 'stop')

        self.logger.error(f"Unknown service state for {service}: {state}")
        return False
