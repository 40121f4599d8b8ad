from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


class InvalidKeyError(ValueError):
    """Raised when an object or key has no usable namespace/name."""


class CacheSyncTimeoutError(RuntimeError):
    """Raised when the informer caches do not finish their initial list in time."""


class ReconcileError(Exception):
    """Base class for errors returned by a single Application sync."""


class InvalidApplicationError(ReconcileError):
    """The Application spec cannot be reconciled until a user edits it."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class OwnershipConflictError(ReconcileError):
    """A Deployment with the expected name exists but is not controlled by the Application.

    Retrying will not resolve the conflict; the queue still treats it like any
    other failed sync and drops the key once the retry ceiling is reached.
    """

    def __init__(self, application_key: str, deployment_name: str) -> None:
        super().__init__(
            f'Resource "{deployment_name}" already exists and is not managed by '
            f"Application {application_key}"
        )
        self.application_key = application_key
        self.deployment_name = deployment_name


class InformerFailedError(RuntimeError):
    """Raised when an informer stopped for good and the caches can no longer be trusted."""
