"""Summary statistics over benchmark samples.

Each metric is reduced to its median, minimum and maximum.  The median is
the compared value: it is robust to the occasional slow iteration caused by
scheduler noise, which a mean is not.

Integer medians of an even-sized sample combine the two middle values as
``a // 2 + b // 2 + (a % 2 + b % 2) // 2``.  For non-negative inputs that is
the floor of their mean, and it is kept bit-for-bit so that receipts
produced by different versions agree.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from perfgate.results import FloatSummary, IntSummary, Sample, Stats


class NoSamples(ValueError):
    """There were no values to summarize."""

    def __init__(self, what: str = "values") -> None:
        super().__init__(f"no {what} to summarize")


def summarize_int(values: Iterable[int]) -> IntSummary:
    """Summarize integer values.

    Raises:
        NoSamples: If *values* is empty.
    """
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        raise NoSamples()
    if n % 2 == 1:
        median = ordered[n // 2]
    else:
        a = ordered[n // 2 - 1]
        b = ordered[n // 2]
        median = (a // 2) + (b // 2) + ((a % 2 + b % 2) // 2)
    return IntSummary(median=median, min=ordered[0], max=ordered[-1])


def summarize_float(values: Iterable[float]) -> FloatSummary:
    """Summarize float values; an even-sized median is the mean of the middle pair.

    Raises:
        NoSamples: If *values* is empty.
    """
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        raise NoSamples()
    if n % 2 == 1:
        median = ordered[n // 2]
    else:
        median = (ordered[n // 2 - 1] + ordered[n // 2]) / 2.0
    return FloatSummary(median=median, min=ordered[0], max=ordered[-1])


def throughput_per_s(work_units: int, wall_ms: int) -> float:
    """Work units per second for one sample; zero when no time elapsed."""
    if wall_ms == 0:
        return 0.0
    return work_units / (wall_ms / 1000.0)


def compute_stats(samples: Sequence[Sample], work_units: int | None = None) -> Stats:
    """Compute Stats from the measured (non-warmup) samples.

    ``max_rss_kb`` is summarized only when every measured sample reported
    it.  ``throughput_per_s`` is present only when *work_units* is given.

    Raises:
        NoSamples: If every sample is a warmup.
    """
    measured = [s for s in samples if not s.warmup]
    if not measured:
        raise NoSamples("measured samples")

    wall = summarize_int(s.wall_ms for s in measured)

    rss: IntSummary | None = None
    rss_values = [s.max_rss_kb for s in measured]
    if all(v is not None for v in rss_values):
        rss = summarize_int(v for v in rss_values if v is not None)

    throughput: FloatSummary | None = None
    if work_units is not None:
        throughput = summarize_float(throughput_per_s(work_units, s.wall_ms) for s in measured)

    return Stats(wall_ms=wall, max_rss_kb=rss, throughput_per_s=throughput)
