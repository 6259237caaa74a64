"""
Security Manager exception hierarchy.

All domain errors inherit from SecurityManagerError so the API layer can
render them with a single handler. Each subclass carries the HTTP status
and the machine-readable code clients see in ``{"error": {"code": ...}}``.
"""


class SecurityManagerError(Exception):
    """Base exception for all Security Manager errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An unexpected error occurred") -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(SecurityManagerError):
    """Raised when a request carries no usable session or credential."""

    status_code = 401
    code = "auth_required"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class OrganizationNotProvisionedError(SecurityManagerError):
    """Raised when a valid session has no organization yet.

    Clients should call ``POST /setup-organization`` rather than sign in again.
    """

    status_code = 403
    code = "organization_not_provisioned"

    def __init__(
        self, message: str = "No organization found. Please complete your setup."
    ) -> None:
        super().__init__(message)


class NotFoundError(SecurityManagerError, LookupError):
    """Raised when a record is absent or belongs to another organization."""

    status_code = 404
    code = "not_found"


class ConflictError(SecurityManagerError):
    """Raised when a write would violate a per-organization uniqueness rule."""

    status_code = 409
    code = "conflict"


class ValidationError(SecurityManagerError, ValueError):
    """Raised when a required field is missing or malformed."""

    status_code = 400
    code = "validation_error"


class ProvisioningError(SecurityManagerError):
    """Raised when an organization or credential could not be provisioned."""
