"""Unit tests for mockomatic.balancer."""

import pytest

from mockomatic.balancer import (
    FillPlan,
    apply_fill_plan,
    balance_parity,
    distribute,
    even_split,
    fill_any_priority,
    fill_by_slot,
    fill_by_time,
    fill_slot_fixed_time,
)
from mockomatic.capacity import BucketCapacity, BucketCounts
from mockomatic.errors import CapacityExceeded, ImbalanceUnresolved
from mockomatic.models import Availability, Bucket, Role

SESSION = "session-1"


def assert_valid_split(result, total, am_fixed, pm_fixed, any_flex):
    splits = (result.am_split, result.pm_split, result.any_split)
    assert all(s % 2 == 0 for s in splits)
    assert sum(splits) == total
    assert result.am_delta + result.pm_delta + result.any_delta == any_flex
    assert min(result.am_delta, result.pm_delta, result.any_delta) >= 0
    assert result.am_split >= am_fixed
    assert result.pm_split >= pm_fixed


class TestEvenSplit:
    def test_two_buckets_odd_fixed_counts(self):
        """Odd fixed counts on both sides are each topped up by an odd delta."""
        result = even_split(10, 3, 1, 6, 0)

        assert_valid_split(result, 10, 3, 1, 6)
        assert result.any_split == 0
        assert (result.am_split, result.pm_split) == (6, 4)
        assert (result.am_delta, result.pm_delta) == (3, 3)

    def test_unpacks_to_six_values(self):
        am_split, pm_split, any_split, am_delta, pm_delta, any_delta = even_split(4, 0, 0, 4, 0)
        assert (am_split, pm_split, any_split) == (2, 2, 0)
        assert (am_delta, pm_delta, any_delta) == (2, 2, 0)

    def test_two_buckets_large_fixed_side(self):
        result = even_split(10, 7, 0, 3, 0)
        assert_valid_split(result, 10, 7, 0, 3)
        assert result.am_split == 8

    def test_three_buckets_even_thirds(self):
        result = even_split(12, 2, 2, 8, 4)
        assert_valid_split(result, 12, 2, 2, 8)
        assert (result.am_split, result.pm_split, result.any_split) == (4, 4, 4)

    def test_three_buckets_respects_any_cap(self):
        result = even_split(12, 0, 0, 12, 2)
        assert_valid_split(result, 12, 0, 0, 12)
        assert result.any_split <= 2

    def test_three_buckets_moves_people_to_a_short_bucket(self):
        result = even_split(20, 13, 1, 6, 8)
        assert_valid_split(result, 20, 13, 1, 6)
        assert result.am_split == 14
        assert result.any_split <= 8

    @pytest.mark.parametrize(
        "total, am_fixed, pm_fixed, any_flex, any_cap",
        [(8, 1, 1, 6, 4), (16, 5, 3, 8, 6), (6, 0, 0, 6, 6), (30, 9, 11, 10, 10), (4, 1, 1, 2, 0)],
    )
    def test_evenness_and_conservation(self, total, am_fixed, pm_fixed, any_flex, any_cap):
        result = even_split(total, am_fixed, pm_fixed, any_flex, any_cap)
        assert_valid_split(result, total, am_fixed, pm_fixed, any_flex)
        assert result.any_split <= any_cap

    def test_odd_total(self):
        with pytest.raises(ImbalanceUnresolved) as excinfo:
            even_split(5, 1, 0, 4, 0)
        assert excinfo.value.stage == "even_split"

    def test_total_must_match_parts(self):
        with pytest.raises(ImbalanceUnresolved):
            even_split(10, 3, 1, 5, 0)

    def test_no_room_to_round_fixed_counts_up(self):
        with pytest.raises(ImbalanceUnresolved):
            even_split(4, 3, 1, 0, 0)

    def test_negative_input(self):
        with pytest.raises(ValueError):
            even_split(4, -1, 1, 4, 0)


class TestParity:
    def test_single_odd_bucket_gets_the_filler(self):
        capacity = BucketCapacity(am=4, pm=4, any=4)
        assert fill_any_priority(BucketCounts(am=1, pm=2, any=2), capacity) == Bucket.AM

    def test_all_odd_prefers_any(self):
        capacity = BucketCapacity(am=4, pm=4, any=4)
        assert fill_any_priority(BucketCounts(am=1, pm=1, any=1), capacity) == Bucket.ANY

    def test_full_bucket(self):
        with pytest.raises(CapacityExceeded) as excinfo:
            fill_any_priority(BucketCounts(am=3), BucketCapacity(am=2, pm=2))
        assert excinfo.value.bucket == "am"

    def test_even_total(self):
        with pytest.raises(ValueError):
            fill_any_priority(BucketCounts(am=2), BucketCapacity(am=4))

    def test_female_filler_also_fixes_general_population(self):
        plan = balance_parity(
            BucketCounts(am=1),
            BucketCounts(am=1, any=2),
            BucketCapacity(am=4, pm=4, any=4),
            female_capacity=BucketCapacity(am=2, pm=2, any=2),
        )
        assert plan.total == 1
        request = plan.requests[0]
        assert request.female
        assert request.role == Role.CANDIDATE
        assert request.availability == Availability.am_only()

    def test_general_filler(self):
        plan = balance_parity(BucketCounts(), BucketCounts(any=3), BucketCapacity(am=4, pm=4, any=4))
        assert plan.total == 1
        assert plan.count(female=False, bucket=Bucket.ANY) == 1

    def test_already_even(self):
        plan = balance_parity(BucketCounts(am=2), BucketCounts(am=2, pm=2), BucketCapacity(am=4, pm=4))
        assert plan.requests == []


class TestExaminerFill:
    def test_fill_by_slot_overflow(self):
        plan = fill_by_slot(female_examiners=0, total_examiners=5, female_cap=0, cap=4,
                            availability=Availability.am_only())
        assert plan.requests == []
        assert plan.overflow == {Bucket.AM: 1}

    def test_fill_by_slot_female_shortfall_counts_towards_total(self):
        plan = fill_by_slot(female_examiners=1, total_examiners=2, female_cap=2, cap=4)
        assert plan.count(female=True) == 1
        assert plan.count(female=False) == 1
        assert plan.overflow == {}
        assert all(r.availability == Availability.any() for r in plan.requests)

    def test_fill_by_time_overlap_uses_full_day_fillers(self):
        plan = fill_by_time(am_count=2, pm_count=1, cap=4)
        assert plan.count(bucket=Bucket.ANY) == 2
        assert plan.count(bucket=Bucket.PM) == 1
        assert plan.count(bucket=Bucket.AM) == 0
        assert plan.overflow == {}

    def test_fill_by_time_female_first_and_overflow(self):
        plan = fill_by_time(am_count=4, pm_count=4, cap=4, female_am=0, female_pm=1, female_cap=2)
        assert plan.count(female=True, bucket=Bucket.ANY) == 1
        assert plan.count(female=True, bucket=Bucket.AM) == 1
        assert plan.count(female=False) == 0
        assert plan.overflow == {Bucket.AM: 2, Bucket.PM: 1}


class TestCandidateFill:
    def test_tops_up_female_and_general_seats(self):
        plan = fill_slot_fixed_time(3, 1, 8, 4, Availability.am_only())
        assert plan.count(female=True) == 3
        assert plan.count(female=False) == 2
        assert all(r.role == Role.CANDIDATE for r in plan.requests)

    @pytest.mark.parametrize(
        "count, female_count",
        [(5, 5), (9, 0), (6, 1)],
    )
    def test_over_capacity(self, count, female_count):
        with pytest.raises(CapacityExceeded) as excinfo:
            fill_slot_fixed_time(count, female_count, 8, 4, Availability.pm_only())
        assert excinfo.value.bucket == "pm"

    def test_distribute_in_order(self):
        assert distribute(6, [4, 4]) == [4, 2]
        assert distribute(0, [4]) == [0]

    def test_distribute_keeps_shares_even(self):
        assert distribute(4, [3, 3]) == [2, 2]

    def test_distribute_over_capacity_names_the_bucket(self):
        with pytest.raises(CapacityExceeded) as excinfo:
            distribute(10, [4, 4], bucket=Bucket.PM)
        assert excinfo.value.bucket == "pm"
        assert excinfo.value.stage is None

    def test_distribute_odd(self):
        with pytest.raises(ValueError):
            distribute(3, [4])


def test_apply_fill_plan_creates_fillers(store):
    plan = FillPlan()
    plan.add(Role.CANDIDATE, Availability.am_only(), True, 2)
    plan.add(Role.EXAMINER, Availability.any(), False, 1)
    plan.add(Role.EXAMINER, Availability.any(), False, 0)

    candidates, examiners = apply_fill_plan(plan, store, SESSION)

    assert len(candidates) == 2
    assert len(examiners) == 1
    assert all(c.filler and c.female_only and c.first_name == "fill" for c in candidates)
    assert candidates[0].shortcode != candidates[1].shortcode
    assert store.fillers(SESSION) == (candidates, examiners)
