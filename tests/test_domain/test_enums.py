"""Tests for domain enumerations."""

from __future__ import annotations

from escrow_engine.domain.enums import (
    TERMINAL_STATUSES,
    Bucket,
    DeadlineKind,
    DisputeOutcome,
    EscrowStatus,
    EventType,
)


class TestEscrowStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {
            "CREATED", "AWAITING_DEPOSIT", "PENDING_CONFIRMATION", "HELD",
            "RELEASING", "RELEASED", "REFUNDING", "REFUNDED",
            "DISPUTE_HELD", "RESOLVED", "CANCELLED", "EXPIRED",
        }
        actual = {s.value for s in EscrowStatus}
        assert actual == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(EscrowStatus.CREATED, str)
        assert EscrowStatus.CREATED == "CREATED"

    def test_terminal_statuses(self) -> None:
        assert {s.value for s in TERMINAL_STATUSES} == {
            "RELEASED", "REFUNDED", "RESOLVED", "CANCELLED", "EXPIRED",
        }
        assert EscrowStatus.RELEASED.is_terminal
        assert not EscrowStatus.HELD.is_terminal
        assert not EscrowStatus.DISPUTE_HELD.is_terminal


class TestEventType:
    def test_all_event_types_exist(self) -> None:
        # 4 lifecycle + 5 settlement + 3 dispute + 3 pre-deposit exits
        assert len(EventType) == 15

    def test_event_type_is_str_enum(self) -> None:
        assert isinstance(EventType.CONTRACT_CREATED, str)


class TestLedgerEnums:
    def test_buckets(self) -> None:
        assert {b.value for b in Bucket} == {"available", "escrow", "pending"}

    def test_deadline_kinds(self) -> None:
        assert DeadlineKind.AUTO_RELEASE == "auto_release"
        assert len(DeadlineKind) == 3

    def test_outcomes(self) -> None:
        assert DisputeOutcome("split") is DisputeOutcome.SPLIT
