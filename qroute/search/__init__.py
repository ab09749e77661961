from qroute.search.hybrid import HybridQuery, HybridRetriever

__all__ = ["HybridQuery", "HybridRetriever"]
