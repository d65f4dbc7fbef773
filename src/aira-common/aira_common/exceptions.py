class LockProviderError(Exception):
    """Raised when the lock backend (e.g. Redis) cannot be reached or errors."""

    def __init__(self, operation: str, key: str, cause: Exception):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"Lock {operation} failed for key={key!r}: {cause}")
