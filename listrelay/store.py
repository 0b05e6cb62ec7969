"""RecipientStore: the list membership and who may change it."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence

import structlog

from .errors import AlreadyPresentError, NotPresentError, PersistenceError

logger = structlog.get_logger()

Persister = Callable[[Sequence[str]], None]


class RecipientStore:
    """Ordered, duplicate-free recipient list plus the admin set.

    ``add`` and ``remove`` are the only mutators.  Each one calls
    *persist* with the new list before returning; if that raises
    :class:`PersistenceError` the in-memory change is undone and the error
    is re-raised, so memory never runs ahead of the file.

    Lookups are exact and case-sensitive.
    """

    def __init__(
        self,
        recipients: Iterable[str] = (),
        admins: Iterable[str] = (),
        *,
        persist: Persister | None = None,
    ) -> None:
        # dict keys keep insertion order and give O(1) membership
        self._recipients: dict[str, None] = dict.fromkeys(recipients)
        self._admins: frozenset[str] = frozenset(admins)
        self._persist = persist

    def contains(self, address: str) -> bool:
        return address in self._recipients

    def is_admin(self, address: str) -> bool:
        return address in self._admins

    def render(self) -> list[str]:
        """Return the recipients in insertion order."""
        return list(self._recipients)

    @property
    def admins(self) -> frozenset[str]:
        return self._admins

    def __len__(self) -> int:
        return len(self._recipients)

    def add(self, address: str) -> None:
        """Append *address*; raises :class:`AlreadyPresentError` if listed."""
        if address in self._recipients:
            raise AlreadyPresentError(address)
        self._recipients[address] = None
        try:
            self._commit()
        except PersistenceError:
            del self._recipients[address]
            raise
        logger.info("recipient_added", address=address, recipients=len(self._recipients))

    def remove(self, address: str) -> None:
        """Drop *address*; raises :class:`NotPresentError` if not listed."""
        if address not in self._recipients:
            raise NotPresentError(address)
        previous = dict(self._recipients)
        del self._recipients[address]
        try:
            self._commit()
        except PersistenceError:
            self._recipients = previous
            raise
        logger.info("recipient_removed", address=address, recipients=len(self._recipients))

    def _commit(self) -> None:
        if self._persist is not None:
            self._persist(self.render())
