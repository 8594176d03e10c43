"""Tests for the central transition table."""

from __future__ import annotations

import itertools

import pytest
from session_engine.lifecycle.transitions import (
    ALL_STATUSES,
    LIVE,
    TERMINAL,
    TRANSITIONS,
    SessionStatus,
    is_legal,
    is_terminal,
    parse_status,
)

_EXPECTED_LEGAL = {
    ("created", "active"),
    ("created", "cancelled"),
    ("active", "paused"),
    ("active", "completed"),
    ("active", "cancelled"),
    ("paused", "active"),
    ("paused", "completed"),
    ("paused", "cancelled"),
}


class TestTransitionTable:
    def test_every_status_has_an_entry(self) -> None:
        assert set(TRANSITIONS) == set(SessionStatus)

    @pytest.mark.parametrize(("current", "target"), list(itertools.product(ALL_STATUSES, repeat=2)))
    def test_legality_matches_table(self, current: str, target: str) -> None:
        assert is_legal(current, target) is ((current, target) in _EXPECTED_LEGAL)

    def test_terminal_statuses(self) -> None:
        assert TERMINAL == {SessionStatus.COMPLETED, SessionStatus.CANCELLED}
        assert is_terminal("completed")
        assert not is_terminal("paused")

    def test_live_statuses(self) -> None:
        assert LIVE == {SessionStatus.ACTIVE, SessionStatus.PAUSED}

    def test_self_transitions_are_illegal(self) -> None:
        for status in ALL_STATUSES:
            assert not is_legal(status, status)


class TestParseStatus:
    def test_known_label(self) -> None:
        assert parse_status("paused") is SessionStatus.PAUSED

    @pytest.mark.parametrize("label", ["", "ACTIVE", "stopped", "deleted"])
    def test_unknown_label(self, label: str) -> None:
        assert parse_status(label) is None
        assert not is_legal("created", label)
        assert not is_terminal(label)
