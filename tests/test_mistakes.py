"""Tests for mistake recording and pattern clustering."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from codecoach.engine.errors import StoreUnavailable, ValidationError
from codecoach.engine.mistakes import (
    ANNOUNCED_NAMESPACE,
    MISTAKE_NAMESPACE,
    MistakeAggregator,
    MistakeEvent,
    MistakeRecord,
    cluster_patterns,
    fingerprint,
    recency_weight,
)

BAD_INDENT = [
    "def area(w, h):\nreturn w * h",
    "def mul(a, b):\nreturn a * b",
    "def scale(x, k):\nreturn x * k",
]


def indentation_error(user="ada", i=0, **extra):
    event = {
        "userId": user,
        "language": "python",
        "errorKind": "IndentationError",
        "codeContext": BAD_INDENT[i % len(BAD_INDENT)],
    }
    event.update(extra)
    return event


def record(mistake_id, ts, fp="fp1", user="ada"):
    return MistakeRecord(
        mistake_id=mistake_id,
        user_id=user,
        timestamp=ts,
        language="python",
        error_kind="IndentationError",
        context_fingerprint=fp,
    )


@pytest.fixture
def announced():
    return []


@pytest.fixture
def aggregator(store, clock, announced):
    async def on_reinforcement(pattern, now):
        announced.append(pattern)

    return MistakeAggregator(store, clock=clock, on_reinforcement=on_reinforcement)


class TestFingerprint:
    def test_blind_to_names_and_literals(self):
        fps = {fingerprint("python", "IndentationError", code) for code in BAD_INDENT}
        assert len(fps) == 1

    def test_error_kind_and_language_matter(self):
        code = BAD_INDENT[0]
        assert fingerprint("python", "IndentationError", code) != fingerprint("python", "SyntaxError", code)
        assert fingerprint("python", "IndentationError", code) != fingerprint("ruby", "IndentationError", code)

    def test_indentation_shape_matters(self):
        fixed = "def area(w, h):\n    return w * h"
        assert fingerprint("python", "IndentationError", fixed) != fingerprint(
            "python", "IndentationError", BAD_INDENT[0]
        )


class TestClusterPatterns:
    def test_same_fingerprint_joins_one_pattern(self, start):
        records = [record(f"m{i}", start - timedelta(days=i)) for i in range(3)]
        patterns = cluster_patterns(records, start)
        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.member_mistake_ids == ("m2", "m1", "m0")
        assert pattern.frequency == 3
        assert pattern.recent_frequency == 3
        assert pattern.pattern_key == "fp1:m2"

    def test_gap_beyond_window_starts_new_pattern(self, start):
        old = start - timedelta(days=200)
        records = [record("old", old), record("new1", start - timedelta(days=1)), record("new2", start)]
        patterns = cluster_patterns(records, start)
        assert sorted(p.member_mistake_ids for p in patterns) == [("new1", "new2"), ("old",)]
        assert patterns[0].member_mistake_ids == ("new1", "new2")

    def test_each_record_in_exactly_one_pattern(self, start):
        records = [record(f"m{i}", start - timedelta(days=30 * i), fp=f"fp{i % 2}") for i in range(8)]
        members = [m for p in cluster_patterns(records, start) for m in p.member_mistake_ids]
        assert sorted(members) == sorted(r.mistake_id for r in records)

    def test_ordered_by_severity_then_key(self, start):
        records = [record(f"a{i}", start - timedelta(days=40)) for i in range(3)]
        records += [record(f"b{i}", start, fp="fp2") for i in range(3)]
        patterns = cluster_patterns(records, start)
        assert [p.fingerprint for p in patterns] == ["fp2", "fp1"]
        assert patterns[0].severity > patterns[1].severity

    def test_known_key_survives_an_earlier_member(self, start):
        records = [record(f"m{i}", start + timedelta(minutes=i)) for i in range(3)]
        assert cluster_patterns(records, start)[0].pattern_key == "fp1:m0"

        records.append(record("early", start - timedelta(hours=1)))
        assert cluster_patterns(records, start)[0].pattern_key == "fp1:early"
        kept = cluster_patterns(records, start, known_keys={"fp1:m0", "fp2:zz"})
        assert [p.pattern_key for p in kept] == ["fp1:m0"]
        assert kept[0].member_mistake_ids == ("early", "m0", "m1", "m2")

    def test_recency_weight_halves_every_half_life(self, start):
        assert recency_weight(start, start, 14) == 1.0
        assert recency_weight(start - timedelta(days=14), start, 14) == pytest.approx(0.5)
        assert recency_weight(start - timedelta(days=28), start, 14) == pytest.approx(0.25)


class TestRecordMistake:
    @pytest.mark.asyncio
    async def test_three_indentation_errors_need_reinforcement(self, aggregator, start):
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i))
        patterns = await aggregator.patterns_needing_reinforcement("ada")
        assert len(patterns) == 1
        assert patterns[0].frequency == 3
        assert patterns[0].error_kind == "IndentationError"
        assert patterns[0].last_seen_at == start

    @pytest.mark.asyncio
    async def test_two_are_not_enough(self, aggregator):
        for i in range(2):
            await aggregator.record_mistake(indentation_error(i=i))
        assert await aggregator.patterns_needing_reinforcement("ada") == []
        assert len(await aggregator.patterns("ada")) == 1

    @pytest.mark.asyncio
    async def test_old_members_do_not_count(self, aggregator, start):
        for i in range(3):
            ts = (start - timedelta(days=100 + i)).isoformat()
            await aggregator.record_mistake(indentation_error(i=i, timestamp=ts))
        assert await aggregator.patterns_needing_reinforcement("ada") == []

    @pytest.mark.asyncio
    async def test_announced_once_on_first_crossing(self, aggregator, announced, backend):
        for i in range(5):
            await aggregator.record_mistake(indentation_error(i=i))
        assert len({p.pattern_key for p in announced}) == 1
        assert announced[0].frequency == 3
        # Later members refresh the same pattern instead of announcing a new one.
        assert [p.frequency for p in announced] == [3, 4, 5]
        assert len(await backend.scan(ANNOUNCED_NAMESPACE, prefix="ada/")) == 1

    @pytest.mark.asyncio
    async def test_backdated_mistake_keeps_pattern_key(self, aggregator, announced, start):
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i, mistakeId=f"m{i}"))
        key = announced[0].pattern_key
        assert key.endswith(":m0")

        early = (start - timedelta(hours=1)).isoformat()
        await aggregator.record_mistake(indentation_error(mistakeId="a_early", timestamp=early))
        patterns = await aggregator.patterns_needing_reinforcement("ada")
        assert [p.pattern_key for p in patterns] == [key]
        assert patterns[0].member_mistake_ids == ("a_early", "m0", "m1", "m2")
        assert [p.pattern_key for p in announced] == [key, key]
        assert announced[-1].frequency == 4

    @pytest.mark.asyncio
    async def test_callback_passed_record_time(self, aggregator, start):
        seen = []

        async def on_reinforcement(pattern, now):
            seen.append(now)

        aggregator.on_reinforcement = on_reinforcement
        later = start + timedelta(days=10)
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i), now=later)
        assert seen == [later]

    @pytest.mark.asyncio
    async def test_failed_scheduling_retried_on_next_record(self, aggregator, backend):
        calls = []

        async def on_reinforcement(pattern, now):
            calls.append(pattern)
            if len(calls) == 1:
                raise StoreUnavailable("reviews: concurrent updates")

        aggregator.on_reinforcement = on_reinforcement
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i))
        assert len(calls) == 1
        assert await backend.scan(ANNOUNCED_NAMESPACE, prefix="ada/") == []

        await aggregator.record_mistake(indentation_error(i=3))
        assert len(calls) == 2
        assert calls[1].frequency == 4
        assert len(await backend.scan(ANNOUNCED_NAMESPACE, prefix="ada/")) == 1

    @pytest.mark.asyncio
    async def test_announcements_survive_restart(self, aggregator, store, clock, announced):
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i))

        later = []

        async def on_reinforcement(pattern, now):
            later.append(pattern)

        restarted = MistakeAggregator(store, clock=clock, on_reinforcement=on_reinforcement)
        await restarted.record_mistake(indentation_error(i=3))
        assert [p.pattern_key for p in later] == [announced[0].pattern_key]
        assert later[0].frequency == 4
        assert len(await restarted.records("ada")) == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [
        {"userId": "ada", "language": "python"},
        {"language": "python", "errorKind": "NameError"},
        {"userId": "ada", "language": "python", "errorKind": "NameError", "codeContext": 7},
        {"userId": "ada", "language": "python", "errorKind": "NameError", "timestamp": "last tuesday"},
        ["not", "a", "mapping"],
    ])
    async def test_invalid_events_rejected_without_mutation(self, aggregator, bad):
        with pytest.raises(ValidationError):
            await aggregator.record_mistake(bad)
        assert await aggregator.records("ada") == []

    @pytest.mark.asyncio
    async def test_duplicate_mistake_id_rejected(self, aggregator):
        await aggregator.record_mistake(indentation_error(mistakeId="m1"))
        with pytest.raises(ValidationError):
            await aggregator.record_mistake(indentation_error(mistakeId="m1"))
        assert len(await aggregator.records("ada")) == 1

    @pytest.mark.asyncio
    async def test_accepts_event_objects(self, aggregator, start):
        event = MistakeEvent("ada", "python", "NameError", "print(x)", timestamp=start, mistake_id="n1")
        stored = await aggregator.record_mistake(event)
        assert stored.mistake_id == "n1"
        assert stored.timestamp == start

    @pytest.mark.asyncio
    async def test_concurrent_reports_all_counted(self, aggregator):
        await asyncio.gather(*(aggregator.record_mistake(indentation_error(i=i)) for i in range(6)))
        patterns = await aggregator.patterns("ada")
        assert [p.frequency for p in patterns] == [6]

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, aggregator):
        for i in range(3):
            await aggregator.record_mistake(indentation_error(user="ada", i=i))
        await aggregator.record_mistake(indentation_error(user="grace"))
        assert len(await aggregator.patterns_needing_reinforcement("ada")) == 1
        assert await aggregator.patterns_needing_reinforcement("grace") == []

    @pytest.mark.asyncio
    async def test_store_outage_degrades_to_session_state(self, aggregator, backend, store):
        backend.down = True
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i))
        assert len(await aggregator.patterns_needing_reinforcement("ada")) == 1
        assert len(store.pending) == 4

        backend.down = False
        assert await store.flush() == 0
        assert len(await backend.scan(MISTAKE_NAMESPACE, prefix="ada/")) == 3


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_mark_resolved(self, aggregator):
        stored = await aggregator.record_mistake(indentation_error(mistakeId="m1"))
        resolved = await aggregator.mark_resolved("ada", stored.mistake_id)
        assert resolved.resolved
        with pytest.raises(ValidationError):
            await aggregator.mark_resolved("ada", "missing")

    @pytest.mark.asyncio
    async def test_apply_review(self, aggregator, start):
        for i in range(2):
            await aggregator.record_mistake(indentation_error(i=i, mistakeId=f"m{i}"))
        due = start + timedelta(days=3)
        assert await aggregator.apply_review("ada", ["m0", "m1", "ghost"], 1, 2.6, due) == 2
        records = await aggregator.records("ada")
        assert {(r.review_count, r.ease_factor, r.next_review_at) for r in records} == {(1, 2.6, due)}

    @pytest.mark.asyncio
    async def test_erase_user(self, aggregator, backend):
        for i in range(3):
            await aggregator.record_mistake(indentation_error(i=i))
        assert await aggregator.erase_user("ada") == 3
        assert await aggregator.records("ada") == []
        assert await backend.scan(MISTAKE_NAMESPACE, prefix="ada/") == []
