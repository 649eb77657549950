class BackendError(Exception):
    """The database or another backing service failed; the caller may retry."""


class PermissionDenied(Exception):
    """The signed-in user may not see or change the requested rows."""


class FunctionError(Exception):
    """A server-side function could not complete."""

    def __init__(self, message, status=500):
        super().__init__(message)
        self.status = status
