"""
Domain errors raised by the engines and services, mapped to HTTP by main.py
"""


class DomainError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = 400


class NotFoundError(DomainError):
    status_code = 404


class ForbiddenError(DomainError):
    status_code = 403


class ConflictError(DomainError):
    """Duplicate resources and concurrent writes"""
    status_code = 409


class StateConflictError(ConflictError):
    """Operation not allowed in the entity's current state"""
    status_code = 400
