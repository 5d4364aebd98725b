"""Runtime settings read from environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path

from .constants import (
    CONNECT_RETRIES,
    CONNECT_RETRY_BASE_DELAY,
    DEFAULT_COLLECTION_NAME,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_PROVIDER,
    DEFAULT_MEMORY_FILE,
    DEFAULT_MEMORY_PATH,
    DEFAULT_NEO4J_DATABASE,
    DEFAULT_OPENAI_EMBEDDING_MODEL,
)
from .errors import ConfigurationError

PERSISTENCE_TYPES = ("json", "neo4j")
EMBEDDING_PROVIDERS = ("sentence-transformers", "openai")


def _env_flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Everything needed to build a record store, an index and an engine."""

    memory_dir: Path = Path(DEFAULT_MEMORY_PATH)
    persistence_type: str = "json"
    memory_file: Path | None = None

    neo4j_uri: str | None = None
    neo4j_username: str | None = None
    neo4j_password: str | None = None
    neo4j_database: str = DEFAULT_NEO4J_DATABASE

    qdrant_url: str | None = None
    qdrant_api_key: str | None = None
    qdrant_path: Path | None = None
    collection_name: str = DEFAULT_COLLECTION_NAME
    recreate_on_mismatch: bool = True
    connect_retries: int = CONNECT_RETRIES
    connect_retry_delay: float = CONNECT_RETRY_BASE_DELAY

    embedding_provider: str = DEFAULT_EMBEDDING_PROVIDER
    embedding_model: str | None = None
    openai_api_key: str | None = None

    log_level: str = "INFO"

    @property
    def memory_file_path(self) -> Path:
        return self.memory_file or self.memory_dir / DEFAULT_MEMORY_FILE

    @property
    def qdrant_location(self) -> Path:
        return self.qdrant_path or self.memory_dir / "qdrant"

    @property
    def resolved_embedding_model(self) -> str:
        if self.embedding_model:
            return self.embedding_model
        if self.embedding_provider == "openai":
            return DEFAULT_OPENAI_EMBEDDING_MODEL
        return DEFAULT_EMBEDDING_MODEL

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        """Build settings from the process environment (or a given mapping)."""
        env = os.environ if environ is None else environ

        memory_file = env.get("MEMORY_FILE_PATH")
        qdrant_path = env.get("QDRANT_PATH")
        settings = cls(
            memory_dir=Path(env.get("MEMORY_PATH", DEFAULT_MEMORY_PATH)),
            persistence_type=env.get("PERSISTENCE_TYPE", "json").lower(),
            memory_file=Path(memory_file) if memory_file else None,
            neo4j_uri=env.get("NEO4J_URI"),
            neo4j_username=env.get("NEO4J_USERNAME") or env.get("NEO4J_USER"),
            neo4j_password=env.get("NEO4J_PASSWORD"),
            neo4j_database=env.get("NEO4J_DATABASE", DEFAULT_NEO4J_DATABASE),
            qdrant_url=env.get("QDRANT_URL") or None,
            qdrant_api_key=env.get("QDRANT_API_KEY") or None,
            qdrant_path=Path(qdrant_path) if qdrant_path else None,
            collection_name=env.get("QDRANT_COLLECTION_NAME", DEFAULT_COLLECTION_NAME),
            recreate_on_mismatch=_env_flag(env.get("QDRANT_RECREATE_ON_MISMATCH"), True),
            embedding_provider=env.get("EMBEDDING_PROVIDER", DEFAULT_EMBEDDING_PROVIDER).lower(),
            embedding_model=env.get("EMBEDDING_MODEL") or None,
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ConfigurationError for unusable combinations."""
        if self.persistence_type not in PERSISTENCE_TYPES:
            raise ConfigurationError(
                f"Unknown PERSISTENCE_TYPE '{self.persistence_type}'. "
                f"Use one of: {', '.join(PERSISTENCE_TYPES)}"
            )
        if self.persistence_type == "neo4j":
            missing = [
                key for key, value in (
                    ("NEO4J_URI", self.neo4j_uri),
                    ("NEO4J_USERNAME", self.neo4j_username),
                    ("NEO4J_PASSWORD", self.neo4j_password),
                ) if not value
            ]
            if missing:
                raise ConfigurationError(
                    f"Neo4j persistence requires {', '.join(missing)}"
                )
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ConfigurationError(
                f"Unknown EMBEDDING_PROVIDER '{self.embedding_provider}'. "
                f"Use one of: {', '.join(EMBEDDING_PROVIDERS)}"
            )
        if self.embedding_provider == "openai" and not self.openai_api_key:
            raise ConfigurationError("OpenAI embeddings require OPENAI_API_KEY")
