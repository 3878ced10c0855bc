"""
Store error kinds raised by the services.

Route handlers never build error responses themselves; main.py renders any
StoreError as {"message": ...} with the status code of its class.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(StoreError):
    status_code = 400


class InsufficientStock(StoreError):
    status_code = 400


class Unauthorized(StoreError):
    status_code = 401


class Forbidden(StoreError):
    status_code = 403


class NotFound(StoreError):
    status_code = 404


class Conflict(StoreError):
    status_code = 409
