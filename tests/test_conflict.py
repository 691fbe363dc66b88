"""
TimeSync Backend — Conflict Strategy Tests
============================================

What we test:
    ✅ Later client timestamp wins
    ✅ Equal timestamps resolve to the larger client id, in either direction
    ✅ An identical stamp keeps the stored state
    ✅ Server-wins never overrides
    ✅ Strategy lookup by name
"""

import pytest

from timesync.services.conflict import (
    LastWriterWinsResolver,
    ServerWinsResolver,
    WriteStamp,
    get_resolver,
)


class TestLastWriterWins:

    def setup_method(self):
        self.resolver = LastWriterWinsResolver()

    def test_later_timestamp_wins(self):
        assert self.resolver.incoming_wins(WriteStamp(200, "a"), WriteStamp(100, "b"))
        assert not self.resolver.incoming_wins(WriteStamp(100, "b"), WriteStamp(200, "a"))

    def test_equal_timestamp_breaks_tie_on_client_id(self):
        assert self.resolver.incoming_wins(WriteStamp(100, "client-b"), WriteStamp(100, "client-a"))
        assert not self.resolver.incoming_wins(WriteStamp(100, "client-a"), WriteStamp(100, "client-b"))

    def test_identical_stamp_keeps_stored(self):
        assert not self.resolver.incoming_wins(WriteStamp(100, "a"), WriteStamp(100, "a"))

    @pytest.mark.parametrize(
        "first,second",
        [
            (WriteStamp(100, "a"), WriteStamp(200, "b")),
            (WriteStamp(300, "a"), WriteStamp(300, "z")),
            (WriteStamp(5, "zz"), WriteStamp(6, "aa")),
        ],
    )
    def test_winner_is_independent_of_arrival_order(self, first, second):
        """Whichever stamp is stored first, the same stamp ends up stored."""
        def final(stored, incoming):
            return incoming if self.resolver.incoming_wins(incoming, stored) else stored

        assert final(first, second) == final(second, first) == max(first, second)


class TestServerWins:

    def test_never_overrides(self):
        resolver = ServerWinsResolver()
        assert not resolver.incoming_wins(WriteStamp(10**12, "z"), WriteStamp(0, "a"))


class TestGetResolver:

    def test_known_names(self):
        assert isinstance(get_resolver("last_writer_wins"), LastWriterWinsResolver)
        assert isinstance(get_resolver("server_wins"), ServerWinsResolver)

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            get_resolver("first_writer_wins")
