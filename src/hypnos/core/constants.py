"""Memory system constants.

These constants define the fixed parameters of retrieval, association
linking and sleep consolidation. Tunable values (thresholds, drift, the
sleep window) live in ``EngineConfiguration`` and the settings module.
"""

# Short-term buffer
SHORT_TERM_CAPACITY = 6
"""Maximum number of conversational turns held before an episode commit."""

# Activation blend
ACTIVATION_COSINE_WEIGHT = 0.60
ACTIVATION_IMPORTANCE_WEIGHT = 0.20
ACTIVATION_RECENCY_WEIGHT = 0.10
ACTIVATION_NEIGHBOR_WEIGHT = 0.10

# Retrieval
SEED_COUNT = 8
"""Number of top-cosine memories used as the seed set."""

DRIFT_TOP_FRACTION = 0.10
"""Drift samples from this top fraction of memories by importance."""

PROCEDURAL_COSINE_THRESHOLD = 0.25
PROCEDURAL_IMPORTANCE_THRESHOLD = 0.6

MAX_SNIPPET_BUCKETS = 6
BULLET_SNIPPET_LENGTH = 160
FALLBACK_SNIPPET_LENGTH = 280

# Association linking
ASSOCIATION_TOP_M = 12
ASSOCIATION_COSINE_SCALE = 0.5
ASSOCIATION_TAG_BONUS = 0.1

# Procedural rules
PROCEDURAL_INSERT_IMPORTANCE = 0.8
PROCEDURAL_UPDATE_IMPORTANCE_FLOOR = 0.75

# Sleep consolidation
CHECKPOINT_KEY = "sleep_checkpoint"
PROGRESS_KEY = "sleep_progress"
KMEANS_MIN_CLUSTERS = 2
KMEANS_MAX_CLUSTERS = 32
KMEANS_MEMORIES_PER_CLUSTER = 50
KMEANS_MAX_ITERATIONS = 15
KMEANS_TOLERANCE = 1e-3
MIN_CLUSTER_SIZE = 4

SEMANTIC_IMPORTANCE_BONUS = 0.1
SEMANTIC_MEMBER_EDGE_WEIGHT = 0.7
SEMANTIC_PEER_EDGE_WEIGHT = 0.3
SEMANTIC_PEER_COSINE_THRESHOLD = 0.55
SEMANTIC_SOURCE_TAG = "semantic_cluster"

EDGE_DECAY_FACTOR = 0.99
EDGE_DECAY_FLOOR = 0.05

ARCHIVE_AGE_DAYS = 90
ARCHIVE_IMPORTANCE_THRESHOLD = 0.2
ARCHIVE_IMPORTANCE_FACTOR = 0.9
ARCHIVE_EMBEDDING_DROP_THRESHOLD = 0.05
