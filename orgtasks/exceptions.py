"""
Error taxonomy raised by the task lifecycle engine.

Every error carries the HTTP status code the API layer answers with, so the
routers never translate errors one by one.
"""


class TaskEngineError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Unauthenticated(TaskEngineError):
    """No caller identity could be resolved."""

    status_code = 401

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(detail)


class Forbidden(TaskEngineError):
    """The caller is authenticated but lacks the role or ownership needed."""

    status_code = 403


class ValidationError(TaskEngineError):
    """Malformed input such as an empty title or an unknown status value."""

    status_code = 400


class NotFound(TaskEngineError):
    status_code = 404


class ConflictError(TaskEngineError):
    """Duplicate assignee or a concurrent write detected on the same task."""

    status_code = 409
