class InvalidArgument(ValueError):
    """Caller-correctable input problem; the message names the field."""


class NotFound(ValueError):
    """Record is absent or belongs to another user."""


class Unauthorized(ValueError):
    pass


class ConflictError(RuntimeError):
    """Concurrent update contention that outlasted the retry budget."""


class DependencyFailure(RuntimeError):
    """Storage or mail collaborator could not complete the request."""
