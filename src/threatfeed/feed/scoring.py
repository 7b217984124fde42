# Feed Module - Confidence & Severity Scoring
#
# The only place record confidence is computed.  Pure functions: the
# same inputs always give the same score.
#
#   confidence = clamp(0, 100, base + corroboration + patterns - dispute)
#
#   base          - max reliability among contributing sources
#   corroboration - round(15 * (1 - 0.5^(n-1))), saturating at 15
#   patterns      - sum of the latest delta per fired pattern
#   dispute       - min(20, 2 * max(0, downvotes - upvotes))

from typing import Iterable, Mapping, Optional

from .models import Severity, ThreatRecord, ThreatSource, Votes

CORROBORATION_CAP = 15
DISPUTE_PER_VOTE = 2
DISPUTE_CAP = 20


def corroboration_bonus(n_sources: int) -> int:
    if n_sources <= 1:
        return 0
    return int(round(CORROBORATION_CAP * (1 - 0.5 ** (n_sources - 1))))


def dispute_penalty(votes: Votes) -> int:
    return min(DISPUTE_CAP, DISPUTE_PER_VOTE * max(0, votes.downvotes - votes.upvotes))


def compute_confidence(
    sources: Iterable[ThreatSource],
    pattern_adjustments: Mapping[str, int],
    votes: Votes,
) -> int:
    """Derive a 0-100 confidence score.

    Args:
        sources: Every distinct contributing source.
        pattern_adjustments: pattern_id -> confidence delta.
        votes: Community votes; only net downvotes count.

    Returns:
        int: Clamped confidence.
    """
    source_list = list(sources)
    base = max((s.reliability for s in source_list), default=0)
    score = (
        base
        + corroboration_bonus(len({s.id for s in source_list}))
        + sum(pattern_adjustments.values())
        - dispute_penalty(votes)
    )
    return max(0, min(100, score))


def effective_severity(reported: Severity, floor: Optional[Severity]) -> Severity:
    """Severity is the max of the reported value and any pattern floor."""
    if floor is None or reported >= floor:
        return reported
    return floor


def rescore(record: ThreatRecord) -> ThreatRecord:
    """Recompute derived fields on ``record`` in place."""
    record.confidence = compute_confidence(
        record.sources or [record.source],
        record.pattern_adjustments,
        record.votes,
    )
    record.severity = effective_severity(
        record.reported_severity, record.pattern_severity_floor
    )
    return record
