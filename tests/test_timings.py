import statistics

import pytest

from cardpass.infra import timings


def test_aggregates_match_sample_statistics():
    values = [0.010, 0.020, 0.035, 0.015, 0.050]
    for v in values:
        timings.record_timing("codes.redeem", v)
    agg = timings.aggregates()["codes.redeem"]
    assert agg["n"] == 5
    assert agg["mean"] == pytest.approx(statistics.mean(values))
    assert agg["std"] == pytest.approx(statistics.stdev(values))


def test_single_sample_has_zero_std():
    timings.record_timing("payments.open", 0.2)
    assert timings.aggregates()["payments.open"] == {
        "n": 1, "mean": pytest.approx(0.2), "std": 0.0,
    }


def test_samples_are_folded_into_running_totals():
    for i in range(10_000):
        timings.record_timing("payments.status", i / 1000)
    (acc,) = timings._TIMINGS.values()
    assert acc.n == 10_000
    assert not any(isinstance(getattr(acc, s), list) for s in acc.__slots__)


async def test_timeit_records_block_duration():
    async with timings.timeit("webhooks.ingest"):
        pass
    assert timings.aggregates()["webhooks.ingest"]["n"] == 1
