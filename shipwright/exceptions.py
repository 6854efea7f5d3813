"""Custom exceptions for Shipwright."""


class ShipwrightError(Exception):
    """Base exception for Shipwright."""

    pass


class ConfigurationError(ShipwrightError):
    """Configuration-related errors."""

    pass


class LLMError(ShipwrightError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(ShipwrightError):
    """Model-issued tool call violates the wire protocol."""

    pass


class PermissionDeniedError(ShipwrightError):
    """Action refused by the permission engine or by the user."""

    def __init__(self, subject: str, reason: str):
        super().__init__(f"Permission denied for {subject}: {reason}")
        self.subject = subject
        self.reason = reason


class TransportError(ShipwrightError):
    """Tool server transport failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolServerNotFoundError(ShipwrightError):
    """Tool server not found in registry."""

    def __init__(self, server_id: str):
        super().__init__(f"Tool server not found: {server_id}")
        self.server_id = server_id


class PatchError(ShipwrightError):
    """Patch engine errors."""

    pass


class VcsRequiredError(PatchError):
    """Working tree is not under version control."""

    def __init__(self, path: str = ""):
        location = f" ({path})" if path else ""
        super().__init__(
            f"Patch operations require a Git repository{location}. Run `git init` first."
        )
        self.path = path


class PathTraversalError(PatchError):
    """Diff header names a path outside the working tree."""

    def __init__(self, path: str):
        super().__init__(f"Refusing patch path outside the working tree: {path}")
        self.path = path


class PatchConflictError(PatchError):
    """Diff does not apply cleanly."""

    def __init__(self, conflicts: list[str], action: str = "apply"):
        detail = "\n".join(conflicts) if conflicts else "unknown error"
        super().__init__(f"Patch {action} failed:\n{detail}")
        self.conflicts = list(conflicts)
        self.action = action


class TurnCancelledError(ShipwrightError):
    """Turn cancelled at a suspension point."""

    pass


class OrchestratorBusyError(ShipwrightError):
    """A turn is already in progress."""

    pass


class SessionError(ShipwrightError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
