from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any

from qroute.constants import RRF_K_FIELD, RRF_K_MODALITY
from qroute.fusion.normalize import apply_normalization
from qroute.fusion.rrf import rrf_fuse
from qroute.models import FusedHit, HybridWeights, Normalization, RankedHit, Scalar, SourceKind

SQL_TAG = "sql"
VECTOR_TAG = "vector"


def _scalar(value: Any) -> Scalar:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


def count_keyless(rows: Sequence[Mapping[str, Any]], id_field: str = "id") -> int:
    return sum(1 for row in rows if row.get(id_field) is None)


def rows_to_hits(rows: Sequence[Mapping[str, Any]], id_field: str = "id", tag: str = SQL_TAG) -> list[RankedHit]:
    """Turn SQL rows into a ranked list in row order.

    Every row must carry `id_field`; check with `count_keyless` first.
    """
    hits: list[RankedHit] = []
    for rank, row in enumerate(rows):
        candidate_id = row.get(id_field)
        if candidate_id is None:
            raise ValueError(f"SQL row {rank} has no {id_field!r} value and cannot be fused")
        hits.append(
            RankedHit(
                candidate_id=candidate_id,
                source_rank=rank,
                source_kind=SourceKind.SQL,
                source_tag=tag,
                payload={k: _scalar(v) for k, v in row.items()},
            )
        )
    return hits


def as_ranked(hits: Sequence[FusedHit], kind: SourceKind, tag: str) -> list[RankedHit]:
    return [
        RankedHit(
            candidate_id=h.candidate_id,
            source_rank=rank,
            source_kind=kind,
            source_tag=tag,
            payload=h.payload,
            raw_score=h.fused_score,
        )
        for rank, h in enumerate(hits)
    ]


class FusionEngine:
    """Two-stage fusion: per-field lists of one modality, then vector vs SQL."""

    def __init__(
        self,
        k_field: int = RRF_K_FIELD,
        k_modality: int = RRF_K_MODALITY,
        normalization: Normalization = Normalization.NONE,
    ):
        self.k_field = k_field
        self.k_modality = k_modality
        self.normalization = normalization

    def fuse_fields(
        self,
        lists: Sequence[Sequence[RankedHit]],
        weights: Mapping[str, float] | None = None,
    ) -> list[FusedHit]:
        return rrf_fuse(lists, k=self.k_field, weights=weights)

    def fuse_modalities(
        self,
        vector_hits: Sequence[FusedHit],
        sql_hits: Sequence[RankedHit],
        weights: HybridWeights | None = None,
    ) -> list[FusedHit]:
        weights = weights or HybridWeights()
        sql = [replace(h, source_tag=SQL_TAG) for h in sql_hits]
        vector = as_ranked(vector_hits, SourceKind.VECTOR, VECTOR_TAG)

        # SQL rows are the authoritative payload, vector payloads fill gaps
        fused = rrf_fuse(
            [sql, vector],
            k=self.k_modality,
            weights={SQL_TAG: weights.sql_weight, VECTOR_TAG: weights.vector_weight},
            method=weights.fusion_method,
        )

        carried = {h.candidate_id: h.contributing_sources for h in vector_hits}
        return [
            replace(h, contributing_sources=h.contributing_sources | carried[h.candidate_id])
            if h.candidate_id in carried
            else h
            for h in fused
        ]

    def normalize(self, hits: Sequence[FusedHit], method: Normalization | None = None) -> list[FusedHit]:
        return apply_normalization(hits, method or self.normalization)
