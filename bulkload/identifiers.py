"""
identifiers.py - Placeholders for surrogate keys that are not known yet

A row can reference a database id before that id exists: resolvers hand out
identifiers, the batch builder resolves them right before the insert runs.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Hashable, Mapping, Protocol

from bulkload.errors import IdentifierNotResolved

logger = logging.getLogger(__name__)


class Identifier(ABC):
    """A surrogate key, either known already or waiting for a resolver."""

    @abstractmethod
    def resolve(self, resolved: Mapping[Hashable, int]) -> int:
        """Return the integer key or raise IdentifierNotResolved."""

    def acquire(self) -> None:
        pass

    def release(self) -> None:
        pass


class ResolvedIdentifier(Identifier):
    __slots__ = ("value",)

    def __init__(self, value: int):
        self.value = int(value)

    def resolve(self, resolved: Mapping[Hashable, int] | None = None) -> int:
        return self.value

    def __repr__(self) -> str:
        return f"ResolvedIdentifier({self.value})"


class UnresolvedIdentifier(Identifier):
    """
    Handle to a pending cache entry.

    The handle is (key, generation): once its owner forgets the key, the
    generation is retired and further acquire/release calls are ignored.
    """

    __slots__ = ("key", "owner", "generation")

    def __init__(self, key: Hashable, owner: "IdentifierCache", generation: int):
        self.key = key
        self.owner = owner
        self.generation = generation

    def resolve(self, resolved: Mapping[Hashable, int]) -> int:
        try:
            return resolved[self.key]
        except KeyError:
            raise IdentifierNotResolved(self.key) from None

    def acquire(self) -> None:
        self.owner.acquire(self)

    def release(self) -> None:
        self.owner.release(self)

    def __repr__(self) -> str:
        return f"UnresolvedIdentifier({self.key!r}, owner={self.owner.name!r}, generation={self.generation})"


class IdResolver(Protocol):
    def unresolved(self, value: Any) -> Identifier:
        ...

    def resolve(self, identifier: Identifier) -> int:
        ...


class IdentifierCache:
    """
    Resolved and pending keys of one resolver.

    ``resolved`` and ``pending`` never share a key. Holder counts track how many
    buffered rows still reference the live generation of a key; when the last
    one is released the key is forgotten.
    """

    def __init__(self, name: str):
        self.name = name
        self.resolved: dict[Hashable, int] = {}
        self.pending: dict[Hashable, UnresolvedIdentifier] = {}
        self._holders: dict[Hashable, int] = {}
        self._generations: dict[Hashable, int] = {}
        self._counter = itertools.count(1)

    def unresolved(self, key: Hashable) -> Identifier:
        if key in self.resolved:
            return ResolvedIdentifier(self.resolved[key])

        identifier = self.pending.get(key)
        if identifier is None:
            generation = self._generations.get(key)
            if generation is None:
                generation = self._generations[key] = next(self._counter)
            identifier = self.pending[key] = UnresolvedIdentifier(key, self, generation)
        return identifier

    def owns(self, identifier: Identifier) -> bool:
        return isinstance(identifier, UnresolvedIdentifier) and identifier.owner is self

    def drain(self) -> dict[Hashable, UnresolvedIdentifier]:
        """Take every pending key, leaving the pending set empty."""
        pending, self.pending = self.pending, {}
        return pending

    def store(self, key: Hashable, value: int) -> None:
        self.pending.pop(key, None)
        self.resolved[key] = int(value)

    def find(self, identifier: Identifier) -> int:
        return identifier.resolve(self.resolved)

    def requeue(self, identifier: UnresolvedIdentifier) -> None:
        """Queue a key again when its placeholder outlived a forgotten entry."""
        key = identifier.key
        if key in self.resolved or key in self.pending or key in self._generations:
            return
        self._generations[key] = identifier.generation
        self.pending[key] = identifier

    def acquire(self, identifier: UnresolvedIdentifier) -> None:
        key = identifier.key
        live = self._generations.get(key)
        if live is None:
            # revive a retired handle, its key has to be looked up again
            live = self._generations[key] = identifier.generation
            if key not in self.resolved:
                self.pending.setdefault(key, identifier)
        if live == identifier.generation:
            self._holders[key] = self._holders.get(key, 0) + 1

    def release(self, identifier: UnresolvedIdentifier) -> None:
        key = identifier.key
        if self._generations.get(key) != identifier.generation:
            return
        count = self._holders.get(key, 0) - 1
        if count > 0:
            self._holders[key] = count
            return
        self._forget(key)

    def _forget(self, key: Hashable) -> None:
        self._holders.pop(key, None)
        self._generations.pop(key, None)
        self.resolved.pop(key, None)
        self.pending.pop(key, None)
        logger.debug("[%s] released %r", self.name, key)

    def __len__(self) -> int:
        return len(self.resolved) + len(self.pending)
