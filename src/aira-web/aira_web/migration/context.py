from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from aira_web.database import SessionFactory, session_scope


class Migration:
    """
    Execution context handed to a migration function.

    Collects free-text log lines for the duration of one migration; the text is
    only persisted when the migration fails.
    """

    def __init__(
        self, namespace: str, name: str, session_factory: Optional[SessionFactory] = None
    ):
        self.namespace = namespace
        self.name = name
        self._session_factory = session_factory
        self._lines: List[str] = []

    @property
    def key(self) -> str:
        return f"{self.namespace}:{self.name}"

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def log(self, message: str, *args) -> None:
        self._lines.append(message % args if args else message)

    def log_string(self) -> str:
        return "\n".join(self._lines)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional session on the application database."""
        if self._session_factory is None:
            raise RuntimeError(f"migration {self.key} has no database session factory")
        async with session_scope(self._session_factory) as session:
            yield session
