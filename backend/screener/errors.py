"""Exception taxonomy for the session pipeline.

Each error carries the HTTP status the API layer answers with. Stage and
delivery failures are normally caught and recorded rather than raised to a
caller.
"""

from typing import Optional


class ScreenerError(Exception):
    status_code = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ScreenerError):
    status_code = 404
    code = "NOT_FOUND"


class SessionNotFound(NotFound):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class PrerequisiteMissing(NotFound):
    """A stage's input artifact is absent."""

    status_code = 400

    def __init__(self, session_id: str, artifact: str):
        super().__init__(f"Artifact '{artifact}' is required but missing for session {session_id}")
        self.session_id = session_id
        self.artifact = artifact


class StoreFailure(ScreenerError):
    code = "STORE_FAILURE"


class WaitTimeout(ScreenerError):
    code = "WAIT_TIMEOUT"

    def __init__(self, session_id: str, artifact: str, attempts: int):
        super().__init__(
            f"Artifact '{artifact}' for session {session_id} did not appear after {attempts} attempts"
        )
        self.session_id = session_id
        self.artifact = artifact
        self.attempts = attempts


class StageFailure(ScreenerError):
    code = "STAGE_FAILURE"

    def __init__(self, stage: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.cause = cause
        # A missing prerequisite keeps its 400 through the wrapper
        if isinstance(cause, ScreenerError) and cause.status_code < 500:
            self.status_code = cause.status_code


class DeliveryFailure(ScreenerError):
    code = "DELIVERY_FAILURE"

    def __init__(self, branch: str, message: str):
        super().__init__(f"[{branch}] {message}")
        self.branch = branch
