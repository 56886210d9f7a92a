from __future__ import annotations


class DomainError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(DomainError, ValueError):
    status_code = 400
    default_message = 'Invalid input'


class ForbiddenError(DomainError, PermissionError):
    status_code = 403
    default_message = 'Forbidden access'


class NotFoundError(DomainError, LookupError):
    status_code = 404
    default_message = 'Resource not found'


class ConflictError(DomainError):
    status_code = 409
    default_message = 'Resource conflict'


class InvalidTransitionError(ConflictError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f'Cannot move request from {current} to {target}')


class InsufficientStockError(ConflictError):
    def __init__(self, material_name: str, available, requested) -> None:
        self.material_name = material_name
        self.available = available
        self.requested = requested
        super().__init__(
            f'Insufficient stock for {material_name}. Available: {available}, Requested: {requested}'
        )


class InternalError(DomainError):
    status_code = 500
