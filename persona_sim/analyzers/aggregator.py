"""Reduce per-persona behavior records into session metrics, funnel and summary."""
from typing import Sequence

from persona_sim.models import AnalysisResult, JourneyStep, Metrics, PersonaBehaviorRecord, Summary

FUNNEL_LABELS = ("browsed", "opened", "liked", "commented", "purchased")


def _percent(count: int, total: int) -> int:
    # Truncating division, never rounding, so reports are reproducible.
    return (100 * count) // total if total else 0


def aggregate_results(records: Sequence[PersonaBehaviorRecord]) -> AnalysisResult:
    """Aggregate records; the result does not depend on their order.

    An empty input yields an all-zero result instead of dividing by zero.
    """
    total = len(records)
    open_count = sum(1 for r in records if r.opened)
    like_count = sum(1 for r in records if r.liked)
    comment_count = sum(1 for r in records if r.commented)
    purchase_count = sum(1 for r in records if r.purchased)
    failed_count = sum(1 for r in records if r.used_fallback)

    avg_browse_time = int(sum(r.browse_time for r in records) // total) if total else 0
    avg_interest = int(sum(r.interest for r in records) // total) if total else 0

    metrics = Metrics(
        interest=avg_interest,
        open=_percent(open_count, total),
        like=_percent(like_count, total),
        comment=_percent(comment_count, total),
        purchase=_percent(purchase_count, total),
    )

    counts = (total, open_count, like_count, comment_count, purchase_count)
    journey_steps = [
        JourneyStep(label=label, value=f"{_percent(count, total)}%", count=count)
        for label, count in zip(FUNNEL_LABELS, counts)
    ]

    summary = Summary(
        total_views=total,
        open_count=open_count,
        like_count=like_count,
        comment_count=comment_count,
        purchase_count=purchase_count,
        avg_browse_time=avg_browse_time,
        success_count=total - failed_count,
        failed_count=failed_count,
    )
    return AnalysisResult(users=list(records), metrics=metrics, journey_steps=journey_steps, summary=summary)
