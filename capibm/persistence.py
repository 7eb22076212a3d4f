"""Durable status writes with optimistic concurrency.

The orchestrator never writes status directly: every change goes through a
``StatePersister``, which patches the external store only if the stored
object still carries the version that was read. Persist is called after each
individual create or delete, so an interrupted pass leaves a status that
matches exactly the resources that were actually created.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Generic, Protocol, TypeVar

from loguru import logger
from pydantic import BaseModel

from capibm.errors import ConfigurationError, ConflictError

# =============================================================================
# Collaborator protocols
# =============================================================================


@dataclass(frozen=True, slots=True)
class Stored:
    """A status payload as held by the store, with its version."""

    payload: MappingProxyType[str, Any]
    version: str


class StatusStore(Protocol):
    """External object store supporting optimistic-concurrency patches."""

    async def get(self, key: str) -> Stored | None: ...

    async def patch(
        self, key: str, payload: dict[str, Any], expected_version: str | None,
    ) -> str:
        """Write ``payload`` if the stored version equals ``expected_version``.

        ``expected_version=None`` means the object is expected not to exist.

        Returns:
            The new version.

        Raises:
            ConflictError: The stored object changed since it was read.
        """
        ...


class SecretReader(Protocol):
    async def get_secret(self, namespace: str, name: str) -> Mapping[str, bytes]: ...


# =============================================================================
# Persister
# =============================================================================


class PersistResult(StrEnum):
    OK = "ok"
    UNCHANGED = "unchanged"


S = TypeVar("S", bound=BaseModel)


class StatePersister(Generic[S]):
    """Persists one status object, tracking the version it last read or wrote.

    Example:
        persister, status = await StatePersister.load(store, key, ClusterStatus)
        status.vpc_id = vpc.id
        await persister.persist(status)
    """

    def __init__(
        self, store: StatusStore, key: str, model: type[S], version: str | None = None,
    ) -> None:
        self._store = store
        self._model = model
        self._last: dict[str, Any] | None = None
        self.key = key
        self.version = version
        self._log = logger.bind(component="persistence", key=key)

    @classmethod
    async def load(
        cls, store: StatusStore, key: str, model: type[S],
    ) -> tuple[StatePersister[S], S]:
        persister = cls(store, key, model)
        status = await persister.refresh()
        return persister, status

    async def refresh(self) -> S:
        """Re-read the stored status and adopt its version."""
        stored = await self._store.get(self.key)
        if stored is None:
            self.version = None
            self._last = None
            return self._model()
        self.version = stored.version
        self._last = dict(stored.payload)
        return self._model.model_validate(dict(stored.payload))

    async def persist(self, status: S) -> PersistResult:
        payload = status.model_dump(mode="json")
        if payload == self._last and self.version is not None:
            return PersistResult.UNCHANGED
        try:
            self.version = await self._store.patch(self.key, payload, self.version)
        except ConflictError:
            self._log.warning("Status changed since it was read, caller must re-read")
            raise
        self._last = payload
        self._log.debug("Persisted status at version {version}", version=self.version)
        return PersistResult.OK


# =============================================================================
# In-memory implementations
# =============================================================================


class InMemoryStatusStore:
    """Versioned dict store. Versions are monotonically increasing integers."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[dict[str, Any], int]] = {}
        self.patches = 0

    async def get(self, key: str) -> Stored | None:
        entry = self._objects.get(key)
        if entry is None:
            return None
        payload, version = entry
        return Stored(payload=MappingProxyType(dict(payload)), version=str(version))

    async def patch(
        self, key: str, payload: dict[str, Any], expected_version: str | None,
    ) -> str:
        entry = self._objects.get(key)
        current = str(entry[1]) if entry else None
        if current != expected_version:
            raise ConflictError(key, expected_version, current)
        version = (entry[1] if entry else 0) + 1
        self._objects[key] = (dict(payload), version)
        self.patches += 1
        return str(version)


class InMemorySecretStore:
    def __init__(self, secrets: Mapping[tuple[str, str], Mapping[str, bytes]] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def put(self, namespace: str, name: str, data: Mapping[str, bytes]) -> None:
        self._secrets[(namespace, name)] = dict(data)

    async def get_secret(self, namespace: str, name: str) -> Mapping[str, bytes]:
        try:
            return self._secrets[(namespace, name)]
        except KeyError:
            raise ConfigurationError(f"secret {namespace}/{name} not found") from None
