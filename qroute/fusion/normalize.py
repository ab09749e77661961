import math
from collections.abc import Sequence
from dataclasses import replace

from qroute.constants import SCORE_DECIMALS
from qroute.models import FusedHit, Normalization


def normalize_scores(scores: Sequence[float], method: Normalization) -> list[float]:
    """Rescale scores for display. Order and relative ranking are preserved.

    percentage: min-max into [0, 1]; a zero range maps everything to 1.0.
    exponential: sqrt(score / max), which flattens the steep RRF tail.
    """
    if not scores or method == Normalization.NONE:
        return list(scores)

    if method == Normalization.PERCENTAGE:
        low, high = min(scores), max(scores)
        if high == low:
            return [1.0] * len(scores)
        return [round((s - low) / (high - low), SCORE_DECIMALS) for s in scores]

    if method == Normalization.EXPONENTIAL:
        high = max(scores)
        if high <= 0:
            return [0.0] * len(scores)
        return [round(math.sqrt(max(s, 0.0) / high), SCORE_DECIMALS) for s in scores]

    raise ValueError(f"Unknown normalization: {method}")


def apply_normalization(hits: Sequence[FusedHit], method: Normalization) -> list[FusedHit]:
    if method == Normalization.NONE:
        return list(hits)
    display = normalize_scores([h.fused_score for h in hits], method)
    return [replace(hit, display_score=score) for hit, score in zip(hits, display)]
