#!/usr/bin/env python3
"""
Probes - Liveness checks, syntax validators and service reloaders.

Every probe that should survive the foreground process can be described as a
plain dict (``to_dict``) and rebuilt with the ``build_*`` factories, which is
how the detached watchdog runner reconstructs them from its record.
"""

import logging
import signal
import socket
import subprocess
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import psutil

from ..services import ServiceController

logger = logging.getLogger(__name__)


def _expand(argv: List[str], path: Optional[str]) -> List[str]:
    """Substitute {path} in an argv template."""
    if path is None:
        return list(argv)
    return [str(arg).replace('{path}', path) for arg in argv]


# ---------------------------------------------------------------------------
# Liveness checks
# ---------------------------------------------------------------------------

class LivenessCheck:
    """Predicate proving that the administrative channel is still usable."""

    kind = 'base'

    def check(self) -> bool:
        raise NotImplementedError

    def to_dict(self) -> Optional[Dict[str, Any]]:
        """Return a durable description, or None if not serialisable."""
        return None

    def describe(self) -> str:
        return self.kind

    def __call__(self) -> bool:
        try:
            return bool(self.check())
        except Exception as e:
            logger.warning(f"Liveness check {self.describe()} raised: {e}")
            return False


class TcpCheck(LivenessCheck):
    """The control port accepts a connection (and optionally sends a banner)."""

    kind = 'tcp'

    def __init__(self, host: str = '127.0.0.1', port: int = 22, timeout: float = 10,
                 expect_banner: Optional[str] = None):
        self.host = host
        self.port = int(port)
        self.timeout = timeout
        self.expect_banner = expect_banner

    def check(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                if not self.expect_banner:
                    return True
                sock.settimeout(self.timeout)
                banner = sock.recv(256).decode('ascii', errors='replace')
        except OSError as e:
            logger.debug(f"TCP check {self.host}:{self.port} failed: {e}")
            return False

        if banner.startswith(self.expect_banner):
            return True

        logger.debug(f"Unexpected banner from {self.host}:{self.port}: {banner!r}")
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.kind,
            'host': self.host,
            'port': self.port,
            'timeout': self.timeout,
            'expect_banner': self.expect_banner
        }

    def describe(self) -> str:
        return f"tcp {self.host}:{self.port}"


class CommandCheck(LivenessCheck):
    """A command exits with status 0."""

    kind = 'command'

    def __init__(self, argv: List[str], timeout: float = 10):
        self.argv = list(argv)
        self.timeout = timeout

    def check(self) -> bool:
        try:
            result = subprocess.run(self.argv, capture_output=True, text=True,
                                    check=False, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Command check {self.argv} failed: {e}")
            return False
        return result.returncode == 0

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.kind, 'argv': self.argv, 'timeout': self.timeout}

    def describe(self) -> str:
        return f"command {' '.join(self.argv)}"


class ProcessCheck(LivenessCheck):
    """A process with the given name is running."""

    kind = 'process'

    def __init__(self, name: str):
        self.name = name

    def check(self) -> bool:
        for proc in psutil.process_iter(['name']):
            if proc.info.get('name') == self.name:
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.kind, 'name': self.name}

    def describe(self) -> str:
        return f"process {self.name}"


class AllCheck(LivenessCheck):
    """Every sub-check passes."""

    kind = 'all'

    def __init__(self, checks: List[LivenessCheck]):
        self.checks = list(checks)

    def check(self) -> bool:
        return all(check() for check in self.checks)

    def to_dict(self) -> Optional[Dict[str, Any]]:
        specs = [check.to_dict() for check in self.checks]
        if any(spec is None for spec in specs):
            return None
        return {'type': self.kind, 'checks': specs}

    def describe(self) -> str:
        return ' and '.join(check.describe() for check in self.checks)


class CallableCheck(LivenessCheck):
    """Wraps an in-process predicate. Not reconstructible from disk."""

    kind = 'callable'

    def __init__(self, func: Callable[[], bool], description: Optional[str] = None):
        self.func = func
        self.description = description or getattr(func, '__name__', 'callable')

    def check(self) -> bool:
        return self.func()

    def describe(self) -> str:
        return self.description


def build_liveness_check(spec: Union[None, Dict[str, Any], LivenessCheck, Callable]) -> Optional[LivenessCheck]:
    """Build a liveness check from a dict, callable or existing check."""
    if spec is None:
        return None
    if isinstance(spec, LivenessCheck):
        return spec
    if callable(spec):
        return CallableCheck(spec)

    check_type = spec.get('type')
    if check_type == 'tcp':
        return TcpCheck(host=spec.get('host', '127.0.0.1'), port=spec.get('port', 22),
                        timeout=spec.get('timeout', 10),
                        expect_banner=spec.get('expect_banner'))
    if check_type == 'command':
        return CommandCheck(spec['argv'], timeout=spec.get('timeout', 10))
    if check_type == 'process':
        return ProcessCheck(spec['name'])
    if check_type == 'all':
        return AllCheck([build_liveness_check(sub) for sub in spec.get('checks', [])])

    raise ValueError(f"Unknown liveness check type: {check_type}")


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

class Validator:
    """Syntax check run against the scratch copy of an artifact."""

    def validate(self, path: str) -> Tuple[bool, str]:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


class CommandValidator(Validator):
    """Runs the consuming service's own checker, e.g. ``sshd -t -f {path}``."""

    def __init__(self, argv: List[str], timeout: float = 30):
        self.argv = list(argv)
        self.timeout = timeout

    def validate(self, path: str) -> Tuple[bool, str]:
        command = _expand(self.argv, path)
        try:
            result = subprocess.run(command, capture_output=True, text=True,
                                    check=False, timeout=self.timeout)
        except FileNotFoundError:
            return False, f"validator not found: {command[0]}"
        except subprocess.TimeoutExpired:
            return False, f"validator timed out after {self.timeout}s"
        except OSError as e:
            return False, f"cannot run validator {command[0]}: {e}"

        output = (result.stderr or result.stdout or '').strip()
        return result.returncode == 0, output

    def describe(self) -> str:
        return ' '.join(self.argv)


class CallableValidator(Validator):
    """Wraps a function returning a bool or a (bool, message) tuple."""

    def __init__(self, func: Callable[[str], Any]):
        self.func = func

    def validate(self, path: str) -> Tuple[bool, str]:
        outcome = self.func(path)
        if isinstance(outcome, tuple):
            return bool(outcome[0]), str(outcome[1])
        return bool(outcome), ''

    def describe(self) -> str:
        return getattr(self.func, '__name__', 'callable')


def build_validator(spec: Union[None, Dict[str, Any], Validator, Callable]) -> Optional[Validator]:
    """Build a validator from a dict, callable or existing validator."""
    if spec is None:
        return None
    if isinstance(spec, Validator):
        return spec
    if callable(spec):
        return CallableValidator(spec)
    if spec.get('type') == 'command':
        return CommandValidator(spec['argv'], timeout=spec.get('timeout', 30))

    raise ValueError(f"Unknown validator type: {spec.get('type')}")


# ---------------------------------------------------------------------------
# Reloaders
# ---------------------------------------------------------------------------

class Reloader:
    """Makes the consuming service take the new artifact."""

    def reload(self, path: str) -> bool:
        raise NotImplementedError

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return None

    def describe(self) -> str:
        return self.__class__.__name__


class CommandReloader(Reloader):
    """Runs a command, e.g. ``iptables-restore {path}``."""

    def __init__(self, argv: List[str], timeout: float = 30):
        self.argv = list(argv)
        self.timeout = timeout

    def reload(self, path: str) -> bool:
        command = _expand(self.argv, path)
        try:
            subprocess.run(command, capture_output=True, text=True,
                           check=True, timeout=self.timeout)
            return True
        except subprocess.CalledProcessError as e:
            logger.error(f"Reload command failed: {' '.join(command)}: {e.stderr}")
        except subprocess.TimeoutExpired:
            logger.error(f"Reload command timed out: {' '.join(command)}")
        except OSError as e:
            logger.error(f"Reload command could not run: {' '.join(command)}: {e}")
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'command', 'argv': self.argv, 'timeout': self.timeout}

    def describe(self) -> str:
        return ' '.join(self.argv)


class ServiceReloader(Reloader):
    """Reloads or restarts a service through the init system."""

    def __init__(self, service: str, action: str = 'reload',
                 controller: Optional[ServiceController] = None):
        self.service = service
        self.action = action
        self.controller = controller or ServiceController()

    def reload(self, path: str) -> bool:
        return self.controller.run_action(self.service, self.action)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': 'service', 'service': self.service, 'action': self.action}

    def describe(self) -> str:
        return f"{self.action} {self.service}"


class SignalReloader(Reloader):
    """Sends a signal (SIGHUP by default) to the daemon named by a pidfile."""

    def __init__(self, pidfile: str, signal_name: str = 'SIGHUP',
                 fallback: Optional[Reloader] = None):
        self.pidfile = pidfile
        self.signal_name = signal_name
        self.fallback = fallback

    def _read_pid(self) -> Optional[int]:
        try:
            with open(self.pidfile, 'r') as f:
                return int(f.read().strip())
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read pid file {self.pidfile}: {e}")
            return None

    def reload(self, path: str) -> bool:
        pid = self._read_pid()
        if pid is not None:
            try:
                psutil.Process(pid).send_signal(getattr(signal, self.signal_name))
                logger.info(f"Sent {self.signal_name} to pid {pid}")
                return True
            except (psutil.Error, AttributeError) as e:
                logger.warning(f"Failed to signal pid {pid}: {e}")

        if self.fallback:
            logger.warning(f"Falling back to {self.fallback.describe()}")
            return self.fallback.reload(path)
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'signal',
            'pidfile': self.pidfile,
            'signal': self.signal_name,
            'fallback': self.fallback.to_dict() if self.fallback else None
        }

    def describe(self) -> str:
        return f"{self.signal_name} via {self.pidfile}"


class CallableReloader(Reloader):
    """Wraps an in-process reload function taking the artifact path."""

    def __init__(self, func: Callable[[str], Any]):
        self.func = func

    def reload(self, path: str) -> bool:
        result = self.func(path)
        return True if result is None else bool(result)

    def describe(self) -> str:
        return getattr(self.func, '__name__', 'callable')


def build_reloader(spec: Union[None, Dict[str, Any], Reloader, Callable],
                   controller: Optional[ServiceController] = None) -> Optional[Reloader]:
    """Build a reloader from a dict, callable or existing reloader."""
    if spec is None:
        return None
    if isinstance(spec, Reloader):
        return spec
    if callable(spec):
        return CallableReloader(spec)

    reload_type = spec.get('type')
    if reload_type == 'command':
        return CommandReloader(spec['argv'], timeout=spec.get('timeout', 30))
    if reload_type == 'service':
        return ServiceReloader(spec['service'], spec.get('action', 'reload'), controller)
    if reload_type == 'signal':
        return SignalReloader(spec['pidfile'], spec.get('signal', 'SIGHUP'),
                              build_reloader(spec.get('fallback'), controller))

    raise ValueError(f"Unknown reloader type: {reload_type}")
