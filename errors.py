"""Domain errors raised by the service modules and mapped to HTTP in main.py."""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationError(ServiceError):
    status_code = 400


class PermissionDenied(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class OutOfStockError(ConflictError):
    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for {product_name}")
        self.product_name = product_name


class DuplicateKeysError(ConflictError):
    def __init__(self, duplicates):
        super().__init__(
            f"{len(duplicates)} license key(s) already exist", duplicates=list(duplicates)
        )


class InsufficientFundsError(ServiceError):
    status_code = 402
