"""
Demand store SDK exceptions
"""


class StoreError(Exception):
    """Base exception for all store SDK errors"""

    pass


class StoreAPIError(StoreError):
    """Raised when API request fails"""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StoreNotFoundError(StoreAPIError):
    """Raised when resource is not found (404)"""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class StoreAuthenticationError(StoreAPIError):
    """Raised when authentication fails (401)"""

    def __init__(self, message: str):
        super().__init__(message, status_code=401)


class StoreConflictError(StoreAPIError):
    """Raised when a conditional write finds the row changed underneath it (409)"""

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class StoreDuplicateError(StoreAPIError):
    """Raised when inserting a row whose id already exists"""

    def __init__(self, message: str):
        super().__init__(message, status_code=409)


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached (timeout, connection refused)"""

    pass
