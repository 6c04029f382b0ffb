"""Application-specific exceptions.

Every error the search gate raises on purpose derives from
:class:`KarmaticError`. Each carries a machine-readable ``code`` and the HTTP
``status`` it maps to, so a single error handler registered in
:mod:`karmatic.factory` can render it with :func:`karmatic.utils.http_helpers.api_error`.
"""

from __future__ import annotations


class KarmaticError(Exception):
    """Base class for errors translated into JSON error responses.

    Parameters
    ----------
    message:
        Human-readable error message.
    code:
        Optional machine-readable error code, defaults to the class ``code``.
    details:
        Optional extra context (e.g. the current quota state).
    """

    code = "error"
    status = 400

    def __init__(
        self,
        message: str = "Request failed",
        *,
        code: str | None = None,
        details: object | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        """Serialize the error into a JSON-friendly dictionary."""

        data = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        return data


class ValidationError(KarmaticError):
    """Raised when a request payload fails validation."""

    code = "validation_error"
    status = 400

    def __init__(self, message: str = "Validation error", *, field: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        if field is not None and self.details is None:
            self.details = {"field": field}


class SearchLimitExceeded(KarmaticError):
    """The anonymous visitor already used every search in the current window.

    Nothing was written when this is raised; the caller was not charged.
    """

    code = "search_limit_exceeded"
    status = 429

    def __init__(self, message: str = "Search limit exceeded", *, state=None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.state = state
        if state is not None and self.details is None:
            self.details = state.to_dict()


class Unauthorized(KarmaticError):
    code = "unauthorized"
    status = 401


class Forbidden(KarmaticError):
    code = "forbidden"
    status = 403


class NotFound(KarmaticError):
    code = "not_found"
    status = 404


class InvalidState(KarmaticError):
    code = "invalid_state"
    status = 400


class PersistenceError(KarmaticError):
    """Raised when the database fails underneath a quota or history operation."""

    code = "persistence_error"
    status = 500
