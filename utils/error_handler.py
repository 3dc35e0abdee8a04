"""
Error types for the exploration engine.

Only collaborator adapters and the run control surface raise these; inside a
run, failures are recorded as ExplorationIssue entries instead.
"""

from typing import Any, Dict, Optional


class ExplorerError(Exception):
    """Base exception for all explorer errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ScreenCaptureError(ExplorerError):
    """Raised by a screen provider when a snapshot could not be taken"""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(
            message, code="SCREEN_CAPTURE_ERROR", details={"transient": transient}
        )
        self.transient = transient


class ActuatorError(ExplorerError):
    """Raised by an actuator when the gesture could not be dispatched"""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message, code="ACTUATOR_ERROR", details={"action": action})


class CollaboratorUnavailableError(ExplorerError):
    """A collaborator stayed unavailable past its recovery window"""

    def __init__(self, collaborator: str, attempts: int):
        super().__init__(
            f"{collaborator} unavailable after {attempts} attempts",
            code="COLLABORATOR_UNAVAILABLE",
            details={"collaborator": collaborator, "attempts": attempts},
        )


class RelaunchLimitExceeded(ExplorerError):
    """The target app kept leaving the foreground"""

    def __init__(self, package: str, attempts: int):
        super().__init__(
            f"{package} left the foreground {attempts} times in a row",
            code="RELAUNCH_LIMIT_EXCEEDED",
            details={"package": package, "attempts": attempts},
        )


class ExplorationCancelled(ExplorerError):
    """Stop was requested while the run was suspended"""

    def __init__(self, reason: str = "stop requested"):
        super().__init__(reason, code="EXPLORATION_CANCELLED")


class InvalidStateTransitionError(ExplorerError):
    """A run control call is not legal in the current lifecycle state"""

    def __init__(self, operation: str, state: str):
        super().__init__(
            f"Cannot {operation} while {state}",
            code="INVALID_STATE",
            details={"operation": operation, "state": state},
        )


class PolicyStoreError(ExplorerError):
    """Policy persistence failed"""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, code="POLICY_STORE_ERROR", details={"key": key})
