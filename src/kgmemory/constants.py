"""Limits and defaults shared across modules."""

# Relations without an explicit strength count as this
DEFAULT_RELATION_STRENGTH = 0.5

# Similarity search: limit is clamped into this range
MIN_SEARCH_LIMIT = 1
MAX_SEARCH_LIMIT = 100
DEFAULT_SEARCH_LIMIT = 10
HYBRID_OVERSAMPLE_FACTOR = 2
RELATIONSHIP_SCROLL_LIMIT = 100

# Traversal bounds: out-of-range values are rejected
MIN_RELATED_DEPTH = 1
MAX_RELATED_DEPTH = 5
DEFAULT_RELATED_DEPTH = 2
MIN_CHAIN_DEPTH = 1
MAX_CHAIN_DEPTH = 10
DEFAULT_CHAIN_DEPTH = 3
DEFAULT_PATH_DEPTH = 5

# Index server connection, initialization only
CONNECT_RETRIES = 3
CONNECT_RETRY_BASE_DELAY = 2.0

DEFAULT_MEMORY_PATH = ".claude/memory"
DEFAULT_MEMORY_FILE = "memory.json"
DEFAULT_COLLECTION_NAME = "memory"
DEFAULT_EMBEDDING_PROVIDER = "sentence-transformers"
DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_OPENAI_EMBEDDING_MODEL = "text-embedding-ada-002"
DEFAULT_NEO4J_DATABASE = "neo4j"

# Meta-learning
META_LEARNING_TYPE = "meta_learning"
DOMAIN_LINK_RELATION = "shares_domain_with"
