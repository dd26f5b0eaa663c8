"""Tests for the spaced-repetition scheduler."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from codecoach.config.settings import SchedulerConfig
from codecoach.engine.errors import ValidationError
from codecoach.engine.mistakes import MistakePattern, MistakeRecord
from codecoach.engine.scheduler import (
    ItemKind,
    ReviewItem,
    ReviewState,
    SpacedRepetitionScheduler,
    advance,
    next_ease,
    quality_for,
)

DAY = timedelta(days=1)


def pattern(ts, key="fp1:m0", user="ada", severity=3.0, members=("m0", "m1", "m2")):
    return MistakePattern(
        pattern_key=key,
        user_id=user,
        fingerprint=key.split(":")[0],
        language="python",
        error_kind="IndentationError",
        member_mistake_ids=members,
        frequency=len(members),
        recent_frequency=len(members),
        first_seen_at=ts,
        last_seen_at=ts,
        severity=severity,
    )


@pytest.fixture
def scheduler(store, clock):
    return SpacedRepetitionScheduler(store, clock=clock)


class TestGrading:
    def test_quality(self):
        assert quality_for(True, 1200, 5000) == 5
        assert quality_for(True, 5000, 5000) == 5
        assert quality_for(True, 5001, 5000) == 4
        assert quality_for(False, 100, 5000) == 2

    def test_ease_updates(self):
        assert next_ease(2.5, 5) == pytest.approx(2.6)
        assert next_ease(2.5, 4) == pytest.approx(2.5)
        assert next_ease(2.5, 2) == pytest.approx(2.18)

    def test_ease_floor(self):
        assert next_ease(1.3, 2) == 1.3
        assert next_ease(1.4, 0) == 1.3

    def test_advance_leaves_ladder(self, start):
        config = SchedulerConfig(ladder_days=[1, 2])
        item = ReviewItem("k", ItemKind.MISTAKE, "ada", start + DAY, 1, 2.5)
        item = advance(item, True, 1000, start + DAY, config)
        assert (item.interval_days, item.ladder_step) == (2, 1)
        item = advance(item, True, 1000, item.due_at, config)
        assert item.interval_days == 5
        assert item.review_count == 2

    def test_low_ease_interval_still_grows(self, start):
        config = SchedulerConfig(ladder_days=[1, 2])
        item = ReviewItem("k", ItemKind.MISTAKE, "ada", start + DAY, 1, 1.3, ladder_step=1)
        item = advance(item, True, 1000, start + DAY, config)
        assert item.interval_days == 2
        item = advance(item, True, 1000, item.due_at, config)
        assert item.interval_days == 3


class TestSchedule:
    @pytest.mark.asyncio
    async def test_first_interval_is_one_day(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        assert item.kind == ItemKind.PATTERN
        assert item.interval_days == 1
        assert item.due_at == start + DAY
        assert item.ease_factor == 2.5
        assert item.member_ids == ("m0", "m1", "m2")

    @pytest.mark.asyncio
    async def test_defaults_to_clock(self, scheduler, start):
        item = await scheduler.schedule(pattern(start))
        assert item.due_at == start + DAY

    @pytest.mark.asyncio
    async def test_idempotent(self, scheduler, start):
        first = await scheduler.schedule(pattern(start), now=start)
        again = await scheduler.schedule(pattern(start, severity=4.0, members=("m0", "m1", "m2", "m3")),
                                         now=start + 5 * DAY)
        assert again.due_at == first.due_at
        assert again.severity == 4.0
        assert again.member_ids == ("m0", "m1", "m2", "m3")
        assert len(await scheduler.items("ada")) == 1

    @pytest.mark.asyncio
    async def test_single_mistake(self, scheduler, start):
        mistake = MistakeRecord("m9", "ada", start, "python", "NameError", "fp9")
        item = await scheduler.schedule(mistake, now=start)
        assert item.kind == ItemKind.MISTAKE
        assert item.item_key == "m9"
        assert item.member_ids == ("m9",)

    @pytest.mark.asyncio
    async def test_rejects_other_targets(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.schedule({"patternKey": "x"})


class TestRecordOutcome:
    @pytest.mark.asyncio
    async def test_ladder_then_ease(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        intervals = [item.interval_days]
        for _ in range(5):
            item = await scheduler.record_outcome(item, True, 1200, now=item.due_at)
            intervals.append(item.interval_days)
        assert intervals[:5] == [1, 3, 7, 14, 30]
        assert intervals[5] == 87
        assert item.review_count == 5

    @pytest.mark.asyncio
    async def test_due_strictly_after_outcome(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        for correct in (True, False, True, False, False, True):
            now = item.due_at
            item = await scheduler.record_outcome(item, correct, 3000, now=now)
            assert item.due_at > now
            assert item.last_reviewed_at == now

    @pytest.mark.asyncio
    async def test_incorrect_restarts_ladder(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        for _ in range(2):
            item = await scheduler.record_outcome(item, True, 1000, now=item.due_at)
        assert item.interval_days == 7
        item = await scheduler.record_outcome(item, False, 1000, now=item.due_at)
        assert (item.interval_days, item.ladder_step) == (1, 0)
        item = await scheduler.record_outcome(item, True, 1000, now=item.due_at)
        assert item.interval_days == 3

    @pytest.mark.asyncio
    async def test_lapse_after_ladder_grows_with_ease(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        for _ in range(4):
            item = await scheduler.record_outcome(item, True, 1000, now=item.due_at)
        item = await scheduler.record_outcome(item, False, 1000, now=item.due_at)
        assert item.interval_days == 1
        assert item.ease_factor == pytest.approx(2.58)
        item = await scheduler.record_outcome(item, True, 1000, now=item.due_at)
        assert item.interval_days == 3

    @pytest.mark.asyncio
    async def test_ease_never_below_floor(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        for _ in range(10):
            item = await scheduler.record_outcome(item, False, 1000, now=item.due_at)
            assert item.ease_factor >= 1.3
            assert item.interval_days == 1
        assert item.ease_factor == 1.3

    @pytest.mark.asyncio
    async def test_slow_answer_keeps_ease(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        item = await scheduler.record_outcome(item, True, 9000, now=item.due_at)
        assert item.last_quality == 4
        assert item.ease_factor == 2.5

    @pytest.mark.asyncio
    async def test_resubmitted_snapshot_applied_once(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        first = await scheduler.record_outcome(item, True, 1000, now=start + DAY)
        again = await scheduler.record_outcome(item, True, 1000, now=start + DAY)
        assert again.review_count == 1
        assert again.due_at == first.due_at

    @pytest.mark.asyncio
    async def test_explicit_token_applied_once(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        for _ in range(3):
            latest = await scheduler.record_outcome(
                item.item_key, True, 1000, idempotency_token="quiz-7", now=start + DAY, user_id="ada"
            )
        assert latest.review_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        results = await asyncio.gather(*(
            scheduler.record_outcome(item, True, 1000, now=start + DAY) for _ in range(4)
        ))
        assert {r.review_count for r in results} == {1}

    @pytest.mark.asyncio
    async def test_concurrent_distinct_outcomes_serialized(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        await asyncio.gather(
            scheduler.record_outcome(item, True, 1000, idempotency_token="a", now=start + DAY),
            scheduler.record_outcome(item, True, 1000, idempotency_token="b", now=start + DAY),
        )
        stored = await scheduler.get("ada", item.item_key)
        assert stored.review_count == 2

    @pytest.mark.asyncio
    async def test_invalid_requests(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        with pytest.raises(ValidationError):
            await scheduler.record_outcome(item.item_key, True, 1000)
        with pytest.raises(ValidationError):
            await scheduler.record_outcome("missing", True, 1000, user_id="ada")
        with pytest.raises(ValidationError):
            await scheduler.record_outcome(item, True, -5)
        stored = await scheduler.get("ada", item.item_key)
        assert stored.review_count == 0


class TestDueNow:
    @pytest.mark.asyncio
    async def test_ordering_and_exclusion(self, scheduler, start):
        await scheduler.schedule(pattern(start, key="fp:b", severity=2.0), now=start)
        await scheduler.schedule(pattern(start, key="fp:a", severity=2.0), now=start)
        await scheduler.schedule(pattern(start, key="fp:c", severity=5.0), now=start)
        await scheduler.schedule(pattern(start, key="fp:early", severity=0.1), now=start - DAY)
        await scheduler.schedule(pattern(start, key="fp:late"), now=start + 5 * DAY)
        await scheduler.schedule(pattern(start, key="fp:other", user="grace"), now=start - DAY)

        due = await scheduler.due_now("ada", as_of=start + 2 * DAY)
        assert [i.item_key for i in due] == ["fp:early", "fp:c", "fp:a", "fp:b"]

    @pytest.mark.asyncio
    async def test_not_yet_due(self, scheduler, start):
        await scheduler.schedule(pattern(start), now=start)
        assert await scheduler.due_now("ada", as_of=start + DAY - timedelta(seconds=1)) == []
        assert len(await scheduler.due_now("ada", as_of=start + DAY)) == 1

    @pytest.mark.asyncio
    async def test_reviewed_item_leaves_due_list(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        await scheduler.record_outcome(item, True, 1000, now=start + DAY)
        assert await scheduler.due_now("ada", as_of=start + 2 * DAY) == []


class TestDisable:
    @pytest.mark.asyncio
    async def test_disabled_items_are_terminal(self, scheduler, start):
        item = await scheduler.schedule(pattern(start), now=start)
        disabled = await scheduler.disable("ada", item.item_key)
        assert disabled.state == ReviewState.DISABLED
        assert (await scheduler.disable("ada", item.item_key)).state == ReviewState.DISABLED
        assert await scheduler.due_now("ada", as_of=start + 30 * DAY) == []
        with pytest.raises(ValidationError):
            await scheduler.record_outcome(item.item_key, True, 1000, idempotency_token="new", user_id="ada")
        rescheduled = await scheduler.schedule(pattern(start), now=start + 2 * DAY)
        assert rescheduled.state == ReviewState.DISABLED

    @pytest.mark.asyncio
    async def test_disable_unknown(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.disable("ada", "missing")

    @pytest.mark.asyncio
    async def test_forget_user(self, scheduler, start):
        await scheduler.schedule(pattern(start, key="fp:a"), now=start)
        await scheduler.schedule(pattern(start, key="fp:b"), now=start)
        await scheduler.schedule(pattern(start, key="fp:c", user="grace"), now=start)
        assert await scheduler.forget_user("ada") == 2
        assert await scheduler.items("ada") == []
        assert len(await scheduler.items("grace")) == 1


class TestStoreOutage:
    @pytest.mark.asyncio
    async def test_outcomes_survive_outage(self, scheduler, store, backend, clock, start):
        item = await scheduler.schedule(pattern(start), now=start)
        backend.down = True
        updated = await scheduler.record_outcome(item, True, 1000, now=start + DAY)
        assert updated.interval_days == 3
        due = await scheduler.due_now("ada", as_of=start + 10 * DAY)
        assert [i.review_count for i in due] == [1]

        backend.down = False
        assert await store.flush() == 0
        fresh = SpacedRepetitionScheduler(store, clock=clock)
        assert (await fresh.get("ada", item.item_key)).review_count == 1

    @pytest.mark.asyncio
    async def test_queued_item_wins_over_stale_store_copy(self, scheduler, backend, start):
        item = await scheduler.schedule(pattern(start), now=start)
        backend.down = True
        await scheduler.record_outcome(item, True, 1000, now=start + DAY)
        backend.down = False
        # The store still holds review_count 0 until the outbox is flushed.
        stored = await scheduler.get("ada", item.item_key)
        assert stored.review_count == 1

    @pytest.mark.asyncio
    async def test_forget_user_during_outage(self, scheduler, store, backend, start):
        item = await scheduler.schedule(pattern(start), now=start)
        backend.down = True
        assert await scheduler.forget_user("ada") == 1
        backend.down = False

        # The old row is still in the store until the queued delete runs.
        assert await scheduler.get("ada", item.item_key) is None
        assert await scheduler.items("ada") == []
        assert await scheduler.due_now("ada", as_of=start + 30 * DAY) == []
        assert await store.flush() == 0

    @pytest.mark.asyncio
    async def test_reschedule_after_erase_during_outage(self, scheduler, store, backend, start):
        await scheduler.schedule(pattern(start), now=start)
        backend.down = True
        await scheduler.forget_user("ada")
        backend.down = False

        with pytest.raises(ValidationError):
            await scheduler.record_outcome("fp1:m0", True, 1000, user_id="ada", now=start + DAY)
        again = await scheduler.schedule(pattern(start + 2 * DAY), now=start + 2 * DAY)
        assert again.review_count == 0
        assert again.due_at == start + 3 * DAY
        assert [i.item_key for i in await scheduler.items("ada")] == ["fp1:m0"]
        assert store.pending == []
