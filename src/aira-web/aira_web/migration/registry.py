"""
Ordered registry of migrations.

Items run in registration order, regardless of namespace. The registry must be
fully populated before the manager runs; it is not safe to register while a
run is in progress.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, List, Optional, Set, Tuple, Union

from aira_common.constants import (
    DEFAULT_NAMESPACE,
    MIGRATION_KEY_SEPARATOR,
    MIGRATION_NAME_MAX_LENGTH,
)

from aira_web.exceptions import DuplicateMigration, InvalidMigration
from aira_web.migration.context import Migration

MigrationFunc = Callable[[Migration], Union[None, Awaitable[None]]]


def migration_key(namespace: str, name: str) -> str:
    return f"{namespace}{MIGRATION_KEY_SEPARATOR}{name}"


def split_key(key: str) -> Tuple[str, str]:
    """Split namespace:name. Namespaces cannot contain the separator, names can."""
    namespace, _, name = key.partition(MIGRATION_KEY_SEPARATOR)
    return namespace, name


@dataclass(frozen=True)
class MigrationItem:
    namespace: str
    name: str
    func: MigrationFunc

    @property
    def key(self) -> str:
        return migration_key(self.namespace, self.name)


class MigrationRegistry:
    def __init__(self, default_namespace: str = DEFAULT_NAMESPACE):
        self.default_namespace = default_namespace
        self._items: List[MigrationItem] = []
        self._keys: Set[str] = set()

    def register(self, namespace: str, name: str, func: MigrationFunc) -> MigrationItem:
        """Append a migration; raises DuplicateMigration if the key already exists."""
        if not namespace or MIGRATION_KEY_SEPARATOR in namespace:
            raise InvalidMigration(
                f"namespace must be non-empty and not contain {MIGRATION_KEY_SEPARATOR!r}, got {namespace!r}"
            )
        if not name:
            raise InvalidMigration(f"migration name must be non-empty (namespace {namespace!r})")
        for label, value in (("namespace", namespace), ("migration name", name)):
            if len(value) > MIGRATION_NAME_MAX_LENGTH:
                raise InvalidMigration(
                    f"{label} must be at most {MIGRATION_NAME_MAX_LENGTH} characters, got {len(value)}"
                )
        if not callable(func):
            raise InvalidMigration(f"migration {namespace}:{name} is not callable")
        item = MigrationItem(namespace=namespace, name=name, func=func)
        if item.key in self._keys:
            raise DuplicateMigration(item.key)
        self._items.append(item)
        self._keys.add(item.key)
        return item

    def add(self, name: str, func: MigrationFunc) -> MigrationItem:
        """Register in the default namespace."""
        return self.register(self.default_namespace, name, func)

    def migration(self, name: str, namespace: Optional[str] = None):
        """
        Decorator form of register():

            @registry.migration("add_orders_index")
            async def add_orders_index(migration): ...
        """

        def decorator(func: MigrationFunc) -> MigrationFunc:
            self.register(namespace or self.default_namespace, name, func)
            return func

        return decorator

    def all_items(self) -> Tuple[MigrationItem, ...]:
        return tuple(self._items)

    def namespaces(self) -> List[str]:
        seen: List[str] = []
        for item in self._items:
            if item.namespace not in seen:
                seen.append(item.namespace)
        return seen

    def __iter__(self) -> Iterator[MigrationItem]:
        return iter(self.all_items())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._keys
