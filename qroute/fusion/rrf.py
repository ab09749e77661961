from collections.abc import Mapping, Sequence
from dataclasses import replace

from qroute.constants import RRF_K_MODALITY
from qroute.models import CandidateId, FusedHit, FusionMethod, Payload, RankedHit, SourceKind


def candidate_sort_key(candidate_id: CandidateId) -> tuple[int, int | str]:
    # ints before strings so mixed id types still have a total order
    if isinstance(candidate_id, int) and not isinstance(candidate_id, bool):
        return (0, candidate_id)
    return (1, str(candidate_id))


def fused_order(hit: FusedHit) -> tuple:
    return (-hit.fused_score, hit.best_rank, candidate_sort_key(hit.candidate_id))


def dedupe(hits: Sequence[RankedHit]) -> list[RankedHit]:
    """Keep the best-ranked occurrence of each candidate.

    Survivors are re-ranked 0..n-1 so ranks stay contiguous after duplicates drop out.
    """
    seen: set[CandidateId] = set()
    unique: list[RankedHit] = []
    for hit in sorted(hits, key=lambda h: h.source_rank):
        if hit.candidate_id in seen:
            continue
        seen.add(hit.candidate_id)
        unique.append(replace(hit, source_rank=len(unique)))
    return unique


def list_weights(lists: Sequence[Sequence[RankedHit]], weights: Mapping[str, float] | None = None) -> list[float]:
    """Per-list weights renormalized to sum to 1 over the non-empty lists.

    Without explicit weights every non-empty list gets an equal share. Explicit
    weights are keyed by source_tag; an all-zero assignment falls back to equal
    shares.
    """
    present = [i for i, hits in enumerate(lists) if hits]
    result = [0.0] * len(lists)
    if not present:
        return result

    raw = {i: 1.0 for i in present}
    if weights is not None:
        missing = {lists[i][0].source_tag for i in present} - set(weights)
        if missing:
            raise ValueError(f"No fusion weight for source(s): {sorted(missing)}")
        raw = {i: max(weights[lists[i][0].source_tag], 0.0) for i in present}

    total = sum(raw.values())
    for i in present:
        result[i] = raw[i] / total if total > 0 else 1 / len(present)
    return result


def _contribution(method: FusionMethod, weight: float, rank: int, size: int, k: int) -> float:
    if method == FusionMethod.WEIGHTED:
        return weight * (1 - rank / size)
    return weight / (k + rank)


def rrf_fuse(
    lists: Sequence[Sequence[RankedHit]],
    k: int = RRF_K_MODALITY,
    weights: Mapping[str, float] | None = None,
    method: FusionMethod = FusionMethod.RRF,
) -> list[FusedHit]:
    """Fuse independently ranked lists into one ranking.

    score(c) = sum over lists L holding c of w_L / (k + rank_L(c)), with 0-based
    ranks. The weighted method scores w_L * (1 - rank / len(L)) instead. Only
    ranks matter; raw scores are never compared across lists.

    The first list holding a candidate supplies its payload, later lists only
    fill in missing keys. Output is ordered by fused score desc, then best rank,
    then candidate id.
    """
    if k <= 0 and method == FusionMethod.RRF:
        raise ValueError(f"k must be positive, got {k}")

    unique_lists = [dedupe(hits) for hits in lists]
    list_w = list_weights(unique_lists, weights)

    scores: dict[CandidateId, float] = {}
    best_rank: dict[CandidateId, int] = {}
    sources: dict[CandidateId, set[SourceKind]] = {}
    payloads: dict[CandidateId, Payload] = {}

    for hits, weight in zip(unique_lists, list_w):
        size = len(hits)
        for hit in hits:
            cid = hit.candidate_id
            scores[cid] = scores.get(cid, 0.0) + _contribution(method, weight, hit.source_rank, size, k)
            best_rank[cid] = min(best_rank.get(cid, hit.source_rank), hit.source_rank)
            sources.setdefault(cid, set()).add(hit.source_kind)
            if cid not in payloads:
                payloads[cid] = dict(hit.payload)
            else:
                base = payloads[cid]
                for key, value in hit.payload.items():
                    base.setdefault(key, value)

    fused = [
        FusedHit(
            candidate_id=cid,
            fused_score=score,
            contributing_sources=frozenset(sources[cid]),
            payload=payloads[cid],
            best_rank=best_rank[cid],
        )
        for cid, score in scores.items()
    ]
    fused.sort(key=fused_order)
    return fused
