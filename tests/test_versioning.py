from __future__ import annotations

from conftest import FakeClock
from storysync.store import MetaRecord
from storysync.versioning import VersionController, wall_clock_ms


def _meta(version: int, op_id: str | None = None) -> MetaRecord:
    return MetaRecord(data={}, version=version, last_op_id=op_id)


def test_first_write_is_always_accepted() -> None:
    decision = VersionController().decide(None, base_version=None, op_id=None)

    assert decision.accepted
    assert decision.current_version is None


def test_matching_token_is_a_duplicate_even_with_stale_base() -> None:
    decision = VersionController().decide(_meta(10, "op-1"), base_version=3, op_id="op-1")

    assert decision.duplicate
    assert decision.current_version == 10


def test_missing_or_stale_base_version_conflicts() -> None:
    controller = VersionController()

    assert controller.decide(_meta(10), base_version=None, op_id=None).conflict
    assert controller.decide(_meta(10), base_version=9, op_id="op-2").conflict
    assert controller.decide(_meta(10, "op-1"), base_version=9, op_id="op-2").conflict


def test_matching_base_version_is_accepted() -> None:
    decision = VersionController().decide(_meta(10, "op-1"), base_version=10, op_id="op-2")

    assert decision.accepted
    assert decision.current_version == 10


def test_next_version_is_strictly_increasing_within_one_millisecond() -> None:
    clock = FakeClock(start=1_000)
    controller = VersionController(clock=clock)

    first = controller.next_version(None)
    second = controller.next_version(first)
    third = controller.next_version(second)

    assert first == 1_000
    assert first < second < third


def test_next_version_survives_clock_moving_backwards() -> None:
    clock = FakeClock(start=500)
    controller = VersionController(clock=clock)

    assert controller.next_version(900) == 901
    clock.advance(1_000)
    assert controller.next_version(901) == 1_500


def test_wall_clock_is_in_milliseconds() -> None:
    assert wall_clock_ms() > 1_600_000_000_000
