# --- Reciprocal Rank Fusion ---
# Per-field fusion favors precision among near-duplicate fields; the broader
# modality fusion (all vector vs all SQL) blends more conservatively.

RRF_K_FIELD = 20
RRF_K_MODALITY = 60
DEFAULT_VECTOR_WEIGHT = 0.5
DEFAULT_SQL_WEIGHT = 0.5
SCORE_DECIMALS = 2


# --- Vector Search ---

DEFAULT_RESULT_LIMIT = 10
HYBRID_CANDIDATE_MULTIPLIER = 2
VECTOR_CONTEXT_TOP_MATCHES = 5

# hnsw_ef breadth per preset: fast / balanced / accurate
HNSW_EF_FAST = 64
HNSW_EF_BALANCED = 128
HNSW_EF_ACCURATE = 256
HNSW_EF_MAX = 512
ACCURATE_OVERSAMPLING = 3.0

# Adaptive breadth: each filter clause widens the search by this fraction,
# and breadth never drops below limit * EF_PER_RESULT.
EF_PER_FILTER_CLAUSE = 0.5
EF_PER_RESULT = 4


# --- Cache TTLs (seconds) ---

TTL_EMBEDDING = 24 * 3600
TTL_CLASSIFICATION = 3600
TTL_FIELD_SELECTION = 1800
TTL_SQL_TEXT = 1800

CACHE_KEY_PREFIX = "qroute"
CACHE_MAX_ENTRIES = 10000


# --- Embeddings ---

EMBEDDING_TEXT_LIMIT = 8000

# Embedding models (OpenAI): model -> dimension
EMBEDDING_MODELS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


# --- Workflow ---

DEFAULT_MAX_ROWS = 100
DEFAULT_STEP_TIMEOUT_MS = 30000
MAX_TABLES = 5
ERROR_PREVIEW_LIMIT = 500


# --- LLM ---

LLM_TEMPERATURE = 0.0
LLM_MAX_ATTEMPTS = 3
