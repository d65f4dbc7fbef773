class MigrationError(Exception): ...


class MigrationAlreadyRunning(MigrationError):
    """Another process holds the migration lock. Expected during rolling starts."""

    def __init__(self, lock_key: str):
        self.lock_key = lock_key
        super().__init__(f"migration is already running (lock {lock_key!r} is held)")


class MigrationLockError(MigrationError): ...


class MigrationStorageError(MigrationError): ...


class InvalidMigration(MigrationError): ...


class DuplicateMigration(InvalidMigration):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"migration {key} is already registered")


class MigrationFailed(MigrationError):
    """A registered migration function raised. Nothing after it ran."""

    def __init__(self, namespace: str, name: str, cause: BaseException):
        self.namespace = namespace
        self.name = name
        self.cause = cause
        super().__init__(f"migration {namespace}:{name} failed: {cause}")

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.name}"


class MigrationTimeout(MigrationFailed):
    """
    The migration missed its deadline. abandoned_thread is set when a plain
    function is still running in its worker thread; the lock is then left to
    expire instead of being released.
    """

    def __init__(self, namespace: str, name: str, timeout: float, abandoned_thread: bool = False):
        self.timeout = timeout
        self.abandoned_thread = abandoned_thread
        super().__init__(
            namespace, name, TimeoutError(f"did not finish within {timeout:g}s")
        )
