"""
Error taxonomy shared by the guards, the services and the HTTP layer.

Every error carries a short machine-readable ``code`` and the HTTP status the
API answers with when the error reaches it.
"""


class PortalError(Exception):
    """Base class for every expected failure of the portal."""
    code = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.code


class AuthenticationError(PortalError):
    """No valid session"""
    code = "unauthenticated"
    status_code = 401


class AuthorizationError(PortalError):
    """Forbidden"""
    code = "forbidden"
    status_code = 403


ForbiddenError = AuthorizationError


class ValidationError(PortalError):
    """Invalid input"""
    code = "validation"
    status_code = 400


class NotFoundError(PortalError):
    """Not found"""
    code = "not_found"
    status_code = 404


class ConflictError(PortalError):
    """Operation conflicts with the current state"""
    code = "conflict"
    status_code = 409
