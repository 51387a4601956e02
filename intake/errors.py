"""Error taxonomy for the intake engine.

Every error carries a stable ``code`` and the HTTP ``status_code`` the API
layer answers with. Configuration and store errors are ops-visible (5xx);
detection and validation errors are routine conversation outcomes that the
state machine handles itself.
"""

from __future__ import annotations


class IntakeError(Exception):
    """Base class for all intake engine errors."""

    code = "intake_error"
    status_code = 500

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class ConfigurationError(IntakeError):
    """Malformed or missing category configuration. Fatal, fail closed."""

    code = "configuration_error"
    status_code = 500


class DetectionFailure(IntakeError):
    """A detection strategy could not produce a usable category."""

    code = "detection_failure"
    status_code = 422


class CompletionError(IntakeError):
    """The AI completion call failed, timed out, or returned malformed JSON."""

    code = "completion_error"
    status_code = 502


class ValidationError(IntakeError):
    """One or more fields failed their schema rule."""

    code = "validation_error"
    status_code = 422

    def __init__(self, errors: dict[str, str], message: str = "") -> None:
        self.errors = dict(errors)
        super().__init__(message or "Invalid fields: " + ", ".join(sorted(self.errors)))


class SubmissionError(IntakeError):
    """The marketplace rejected the lead, or the submission was refused locally."""

    code = "submission_error"
    status_code = 409


class SessionNotFound(IntakeError):
    """No live session exists for the supplied id."""

    code = "session_not_found"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionStoreUnavailable(IntakeError):
    """The backing session store could not be read or written."""

    code = "session_store_unavailable"
    status_code = 503
