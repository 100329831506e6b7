"""Exception types shared by the permission engine and the admin API."""


class RBACError(Exception):
    """Base exception for the RBAC backend."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class ValidationError(RBACError):
    """Raised when a temporal range or policy rule set is malformed."""
    pass


class CycleDetectedError(RBACError):
    """Raised when a role is reached twice while walking the hierarchy."""

    def __init__(self, role_id: str):
        self.role_id = role_id
        super().__init__(f"Role hierarchy cycle detected at role {role_id}")


class EvaluationError(RBACError):
    """Raised when data needed for a permission check cannot be loaded."""
    pass


class NotFoundError(RBACError):
    """Raised when a requested record does not exist."""
    pass


class ConflictError(RBACError):
    """Raised when a write conflicts with existing state."""
    pass
