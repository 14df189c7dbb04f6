"""Domain-specific exceptions with user-ready messages for the fleet control plane."""


class BusinessLogicException(Exception):
    """Base exception class for business logic errors.

    All business logic exceptions include user-ready messages that can be
    returned to operators and devices without client-side message construction.
    """

    def __init__(self, message: str, error_code: str) -> None:
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class RecordNotFoundException(BusinessLogicException):
    """Exception raised when a requested record is not found."""

    def __init__(self, resource_type: str, identifier: str | int) -> None:
        message = f"{resource_type} {identifier} was not found"
        super().__init__(message, error_code="RECORD_NOT_FOUND")


class RecordExistsException(BusinessLogicException):
    """Exception raised when attempting to create a record that already exists."""

    def __init__(self, resource_type: str, identifier: str | int) -> None:
        message = f"{resource_type} for {identifier} already exists"
        super().__init__(message, error_code="RECORD_EXISTS")


class InvalidOperationException(BusinessLogicException):
    """Exception raised when an operation cannot be performed due to business rules."""

    def __init__(self, operation: str, cause: str) -> None:
        self.operation = operation
        self.cause = cause
        message = f"Cannot {operation} because {cause}"
        super().__init__(message, error_code="INVALID_OPERATION")


class StateConflictException(InvalidOperationException):
    """Exception raised when an operation is not valid for the current state."""

    def __init__(self, operation: str, current_state: str) -> None:
        super().__init__(operation, f"it is {current_state}")
        self.current_state = current_state
        self.error_code = "STATE_CONFLICT"


class ValidationException(BusinessLogicException):
    """Exception raised when validation fails."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code="VALIDATION_FAILED")


class SignatureException(BusinessLogicException):
    """Exception raised when a request signature does not verify."""

    def __init__(self, message: str = "Request signature is invalid") -> None:
        super().__init__(message, error_code="SIGNATURE_INVALID")


class TenantException(BusinessLogicException):
    """Exception raised when a request references an unknown tenant."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} does not exist", error_code="TENANT_ERROR")


class PersistenceException(BusinessLogicException):
    """Exception raised when the persistent store is unavailable."""

    def __init__(self, operation: str, cause: str) -> None:
        self.operation = operation
        self.cause = cause
        message = f"Cannot {operation} because the database failed: {cause}"
        super().__init__(message, error_code="PERSISTENCE_ERROR")


class CacheException(BusinessLogicException):
    """Exception raised by cache backends.

    Never reaches callers of CacheService; the service logs and swallows it.
    """

    def __init__(self, operation: str, cause: str) -> None:
        self.operation = operation
        self.cause = cause
        message = f"Cache {operation} failed: {cause}"
        super().__init__(message, error_code="CACHE_ERROR")
