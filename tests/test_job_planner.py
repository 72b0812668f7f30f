"""Tests for liquidation chunking and the redemption plan checks."""

import math

import pytest

from abis import ZERO_ADDRESS
from job_planner import (
    INVALID_RECIPIENT,
    NOOP_AMOUNT,
    STRICT_TRUNCATION_MISMATCH,
    TRUNCATED_TO_ZERO,
    build_liquidation_jobs,
    build_redeem_plan,
)
from tests.fakes import KEEPER, addr


def test_chunking_preserves_order_and_count() -> None:
    for n in (0, 1, 5, 20, 21, 47):
        candidates = [addr(i + 1) for i in range(n)]
        for k in (1, 3, 20):
            jobs = build_liquidation_jobs(candidates, k)
            assert len(jobs) == math.ceil(n / k)
            assert [t for job in jobs for t in job.troves] == candidates
            assert all(1 <= len(job) <= k for job in jobs)


def test_jobs_carry_flags_and_ratios() -> None:
    jobs = build_liquidation_jobs([addr(1), addr(2), addr(3)], 2, fallback=False, single_batch=True,
                                  ratios={addr(1): 5, addr(3): 7})
    assert [j.fallback_on_fail for j in jobs] == [False, False]
    assert all(j.single_batch for j in jobs)
    assert jobs[0].ratios == {addr(1): 5}
    assert jobs[1].ratios == {addr(3): 7}


def test_non_positive_chunk_size_rejected() -> None:
    with pytest.raises(ValueError):
        build_liquidation_jobs([addr(1)], 0)


def test_redeem_plan_uses_truncated_amount() -> None:
    plan = build_redeem_plan(100, 80, 50, KEEPER)
    assert plan.ok
    assert plan.effective_musd == 80
    assert plan.requested_musd == 100


def test_redeem_plan_chunk_cap() -> None:
    plan = build_redeem_plan(100, 80, 50, KEEPER, max_chunk=30)
    assert plan.effective_musd == 30


def test_redeem_rejections() -> None:
    assert build_redeem_plan(100, 100, 50, ZERO_ADDRESS).reason == INVALID_RECIPIENT
    assert build_redeem_plan(100, 100, 50, None).reason == INVALID_RECIPIENT
    assert build_redeem_plan(0, 0, 50, KEEPER).reason == NOOP_AMOUNT
    assert build_redeem_plan(100, 0, 50, KEEPER).reason == TRUNCATED_TO_ZERO
    rejected = build_redeem_plan(100, 99, 50, KEEPER, strict_truncation=True)
    assert not rejected.ok
    assert rejected.reason == STRICT_TRUNCATION_MISMATCH


def test_strict_truncation_accepts_exact_amount() -> None:
    assert build_redeem_plan(100, 100, 50, KEEPER, strict_truncation=True).ok
