"""Errors raised by booking, payment and document actions.

Each carries the HTTP-style status the action would answer with, so
screens and the action runner can tell a bad request from a missing row.
"""


class ActionError(Exception):
    status_code = 500

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ActionError):
    status_code = 400


class NotAuthorized(ActionError):
    status_code = 403


class NotFound(ActionError):
    status_code = 404


class PersistenceError(ActionError):
    status_code = 500


def require(**params) -> None:
    """Raise ValidationError naming every empty parameter."""
    missing = [name for name, value in params.items() if value in (None, "", [], {})]
    if missing:
        raise ValidationError(f"Missing required parameters: {', '.join(missing)}")
