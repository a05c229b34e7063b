"""Structured errors for promotion workflows."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class FailureReason(str, Enum):
    """Why a promotion run did not end in its target state."""

    DEPLOY_ERROR = "deploy_error"
    PULL_ERROR = "pull_error"
    STAGING_UNHEALTHY = "staging_unhealthy"
    APPROVAL_TIMEOUT = "approval_timeout"
    APPROVAL_REJECTED = "approval_rejected"
    PRODUCTION_UNHEALTHY = "production_unhealthy"
    NO_PRIOR_IMAGE = "no_prior_image"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"
    MUTABLE_TAG = "mutable_tag"
    ENVIRONMENT_LOCKED = "environment_locked"
    STATE_ERROR = "state_error"


class PromotionError(RuntimeError):
    """Structured exception for promotion workflow failures."""

    default_code = "promotion_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        phase: str = "promotion",
        details: dict[str, Any] | None = None,
        timestamp: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.phase = phase
        self.message = message
        self.details = details or {}
        self.timestamp = timestamp or datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs/report surfaces."""
        return {
            "code": self.code,
            "phase": self.phase,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize the error as a compact JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


class ExecutionError(PromotionError):
    """A command could not be run on the target host (spawn failure, timeout)."""

    default_code = "execution_error"


class DeployError(PromotionError):
    """A container lifecycle operation failed."""

    default_code = "deploy_error"


class PullError(DeployError):
    """The image could not be pulled (registry unreachable or image missing)."""

    default_code = "pull_error"


class RollbackFailedError(PromotionError):
    """Restoring the previous image failed; the environment needs an operator."""

    default_code = "rollback_failed"


class EnvironmentLockedError(PromotionError):
    """Another promotion run already holds the environment."""

    default_code = "environment_locked"


class StateError(PromotionError):
    """A deployment record could not be read or written."""

    default_code = "state_error"


__all__ = [
    "DeployError",
    "EnvironmentLockedError",
    "ExecutionError",
    "FailureReason",
    "PromotionError",
    "PullError",
    "RollbackFailedError",
    "StateError",
]
