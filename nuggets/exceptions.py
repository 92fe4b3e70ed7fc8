"""Exception hierarchy shared by the pipeline services."""

from __future__ import annotations


class NuggetsError(Exception):
    """Base class for all pipeline errors."""
    pass


class TransientError(NuggetsError):
    """Provider or network failure; retried per the job policy."""
    pass


class ValidationError(NuggetsError):
    """Malformed payload or missing field. Never retried."""
    pass


class NotFoundError(NuggetsError):
    """Referenced folder, URL, job, node, session or learner does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class PreconditionError(NuggetsError):
    """Administrative operation attempted from the wrong state."""
    pass


class ConflictError(NuggetsError):
    """State transition that has already happened (e.g. completing twice)."""
    pass


class EmbeddingError(NuggetsError):
    """Embedding generation failed or produced an unusable vector."""
    pass


class EmptyEmbeddingError(EmbeddingError):
    """Empty input text or empty vector returned by the provider."""
    pass


NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    ValidationError,
    NotFoundError,
    EmptyEmbeddingError,
)
