"""Tests for environment-driven settings."""

from pathlib import Path

import pytest

from kgmemory.config import Settings
from kgmemory.errors import ConfigurationError


def test_defaults():
    """Test an empty environment gives the JSON/sentence-transformers setup."""
    settings = Settings.from_env({})
    assert settings.persistence_type == "json"
    assert settings.memory_dir == Path(".claude/memory")
    assert settings.memory_file_path == Path(".claude/memory/memory.json")
    assert settings.qdrant_location == Path(".claude/memory/qdrant")
    assert settings.embedding_provider == "sentence-transformers"
    assert settings.resolved_embedding_model == "all-MiniLM-L6-v2"
    assert settings.collection_name == "memory"
    assert settings.recreate_on_mismatch is True


def test_memory_paths():
    """Test MEMORY_PATH and MEMORY_FILE_PATH."""
    settings = Settings.from_env({"MEMORY_PATH": "/tmp/mem"})
    assert settings.memory_file_path == Path("/tmp/mem/memory.json")

    settings = Settings.from_env({"MEMORY_PATH": "/tmp/mem", "MEMORY_FILE_PATH": "/data/g.json"})
    assert settings.memory_file_path == Path("/data/g.json")


def test_unknown_persistence_type():
    """Test an unknown backend is rejected."""
    with pytest.raises(ConfigurationError):
        Settings.from_env({"PERSISTENCE_TYPE": "sqlite"})


def test_neo4j_requires_credentials():
    """Test Neo4j persistence lists the missing variables."""
    with pytest.raises(ConfigurationError) as exc:
        Settings.from_env({"PERSISTENCE_TYPE": "neo4j", "NEO4J_URI": "bolt://db:7687"})
    assert "NEO4J_USERNAME" in str(exc.value)
    assert "NEO4J_PASSWORD" in str(exc.value)


def test_neo4j_settings():
    """Test a complete Neo4j configuration."""
    settings = Settings.from_env({
        "PERSISTENCE_TYPE": "Neo4j",
        "NEO4J_URI": "bolt://db:7687",
        "NEO4J_USER": "neo4j",
        "NEO4J_PASSWORD": "secret",
    })
    assert settings.persistence_type == "neo4j"
    assert settings.neo4j_username == "neo4j"
    assert settings.neo4j_database == "neo4j"


def test_openai_requires_key():
    """Test OpenAI embeddings need an API key."""
    with pytest.raises(ConfigurationError):
        Settings.from_env({"EMBEDDING_PROVIDER": "openai"})

    settings = Settings.from_env({"EMBEDDING_PROVIDER": "openai", "OPENAI_API_KEY": "sk-test"})
    assert settings.resolved_embedding_model == "text-embedding-ada-002"


def test_recreate_flag():
    """Test QDRANT_RECREATE_ON_MISMATCH parsing."""
    assert Settings.from_env({"QDRANT_RECREATE_ON_MISMATCH": "false"}).recreate_on_mismatch is False
    assert Settings.from_env({"QDRANT_RECREATE_ON_MISMATCH": "1"}).recreate_on_mismatch is True


def test_log_level_uppercased():
    """Test LOG_LEVEL is normalized."""
    assert Settings.from_env({"LOG_LEVEL": "debug"}).log_level == "DEBUG"
