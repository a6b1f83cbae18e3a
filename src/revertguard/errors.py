#!/usr/bin/env python3
"""
Errors - Exception taxonomy shared by every revertguard component.
"""

from typing import Any, List, Optional


class RevertGuardError(Exception):
    """Base class for all revertguard errors."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class ValidationError(RevertGuardError):
    """The consuming service's syntax check rejected the scratch copy.

    No live state has been touched when this is raised.
    """


class ApplyError(RevertGuardError):
    """Writing or reloading the live artifact failed after validation."""


class LivenessLost(RevertGuardError):
    """The liveness probe failed after the change was applied."""


class RollbackPartialFailure(RevertGuardError):
    """One or more undo handlers failed during a rollback pass."""

    def __init__(self, message: str, failures: Optional[List[Any]] = None,
                 step: Optional[str] = None):
        super().__init__(message, step=step)
        self.failures = failures or []


class BackupError(RevertGuardError, IOError):
    """Capturing or restoring a backup failed."""


class StateError(RevertGuardError):
    """Transaction API used in the wrong state (nested begin, closed ledger...)."""


InvalidState = StateError
