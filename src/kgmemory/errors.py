"""Error taxonomy for the memory engine.

Every error carries a stable ``code`` so the server can return a
structured body instead of a bare message.
"""


class MemoryGraphError(Exception):
    """Base class for all memory engine errors."""

    code = "memory_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to a response body."""
        result = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class EntityNotFound(MemoryGraphError):
    """A referenced entity (or principle) does not exist."""

    code = "not_found"

    def __init__(self, name: str, message: str | None = None):
        super().__init__(message or f"Entity not found: {name}", {"name": name})
        self.name = name


class ValidationError(MemoryGraphError):
    """Malformed input or an out-of-range parameter."""

    code = "validation_error"


class BackendUnavailable(MemoryGraphError):
    """The similarity index or graph database could not be reached."""

    code = "backend_unavailable"


class ConfigurationError(MemoryGraphError):
    """Missing or inconsistent configuration."""

    code = "configuration_error"


class EmbeddingError(MemoryGraphError):
    """The embedding provider failed to produce a vector."""

    code = "embedding_error"
