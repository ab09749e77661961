from qroute.fusion.engine import FusionEngine, as_ranked, count_keyless, rows_to_hits
from qroute.fusion.normalize import apply_normalization, normalize_scores
from qroute.fusion.rrf import rrf_fuse

__all__ = [
    "FusionEngine",
    "apply_normalization",
    "as_ranked",
    "count_keyless",
    "normalize_scores",
    "rows_to_hits",
    "rrf_fuse",
]
