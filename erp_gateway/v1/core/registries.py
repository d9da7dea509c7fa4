from collections.abc import Iterable
from enum import Enum
from typing import Any, Generic, Protocol, TypeVar

T = TypeVar("T")


def _key(name: str | Enum) -> str:
    return name.value if isinstance(name, Enum) else name


class Registry(Generic[T]):
    """
    Named lookup table for pluggable implementations.

    Keys may be given as plain strings or as string-valued enum members.
    Registering the same key twice is an error, and a frozen registry
    refuses new entries.
    """

    def __init__(self, name: str):
        self.name = name
        self._entries: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str | Enum, implementation: T) -> None:
        key = _key(name)
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{key}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        if key in self._entries:
            raise ValueError(f"{self.name} '{key}' is already registered")
        self._entries[key] = implementation

    def get(self, name: str | Enum) -> T:
        key = _key(name)
        try:
            return self._entries[key]
        except KeyError:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {key}"
            ) from None

    def missing(self, names: Iterable[str | Enum]) -> list[str]:
        """Return the given names that have no registered implementation."""
        return [key for key in map(_key, names) if key not in self._entries]

    def list(self) -> list[str]:
        return list(self._entries)

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str | Enum) and _key(name) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class JobHandler(Protocol):
    """Protocol for handlers that run one queued job against the ERP."""

    async def handle(self, message: Any) -> Any:
        """
        Handle a job message.

        Args:
            message: The parsed ``JobMessage``

        Returns:
            JSON-serializable result stored on the succeeded job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Job handlers keyed by job type."""

    def __init__(self):
        super().__init__("Job")
