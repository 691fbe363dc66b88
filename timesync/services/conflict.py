"""
TimeSync Backend — Conflict Resolution Strategies
===================================================

What:  Pluggable policies deciding whether a conflicting client change
       overrides the stored state.
How:   Concrete strategies inherit from ConflictResolver and implement
       incoming_wins(). The Merge Engine only talks to the interface; the
       strategy is selected by the CONFLICT_STRATEGY setting.
When:  Called only when a change's base_revision is behind the stored
       revision (the client never saw the current version).

Implementations:
    - LastWriterWinsResolver (default): later client timestamp wins, ties
      broken by the lexicographically larger client id
    - ServerWinsResolver: the stored state always wins
"""

from abc import ABC, abstractmethod
from typing import Dict, NamedTuple, Type


class WriteStamp(NamedTuple):
    """When and by whom a write was made. Compared lexicographically."""
    timestamp: int
    client_id: str


class ConflictResolver(ABC):
    """
    Abstract conflict resolution policy.

    Contract:
        - Must be deterministic: identical stamps always give the same answer,
          whatever order changes arrive in
        - Must not touch storage; the Merge Engine applies the decision
    """

    name: str = ""

    @abstractmethod
    def incoming_wins(self, incoming: WriteStamp, stored: WriteStamp) -> bool:
        """
        Decide a conflict.

        Args:
            incoming: Stamp of the submitted change.
            stored: Stamp of the write that produced the stored state.

        Returns:
            True if the submitted change should be applied, False if the
            stored state is kept and the change is journaled as overridden.
        """
        ...


class LastWriterWinsResolver(ConflictResolver):
    """
    Last-writer-wins on the client's wall-clock timestamp.

    (timestamp, client_id) tuples are compared, so equal timestamps resolve to
    the larger client id. An identical stamp keeps the stored state.
    """

    name = "last_writer_wins"

    def incoming_wins(self, incoming: WriteStamp, stored: WriteStamp) -> bool:
        return tuple(incoming) > tuple(stored)


class ServerWinsResolver(ConflictResolver):
    """Changes based on an outdated revision never override stored state."""

    name = "server_wins"

    def incoming_wins(self, incoming: WriteStamp, stored: WriteStamp) -> bool:
        return False


RESOLVERS: Dict[str, Type[ConflictResolver]] = {
    LastWriterWinsResolver.name: LastWriterWinsResolver,
    ServerWinsResolver.name: ServerWinsResolver,
}


def get_resolver(name: str) -> ConflictResolver:
    """Instantiate the strategy registered under `name`."""
    try:
        return RESOLVERS[name]()
    except KeyError:
        raise ValueError(f"Unknown conflict strategy '{name}'. Choose from: {sorted(RESOLVERS)}")
