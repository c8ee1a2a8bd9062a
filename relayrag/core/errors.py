from __future__ import annotations


class RelayError(Exception):
    """Base error for RelayRAG."""


class ProviderConfigError(RelayError):
    """Missing or invalid vendor configuration."""


class VendorError(RelayError):
    """Network, 4xx or 5xx failure reported by an LLM vendor."""

    def __init__(self, message: str, *, vendor: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.vendor = vendor
        self.status_code = status_code


class VendorAuthError(VendorError):
    """Vendor rejected the configured credentials."""


class VendorTimeoutError(VendorError):
    """Vendor stream exceeded the configured deadline."""


class MalformedVendorOutputError(RelayError):
    """Vendor-generated structured content failed to parse."""

    def __init__(self, message: str, raw_text: str) -> None:
        super().__init__(message)
        self.raw_text = raw_text


class QuotaExceededError(RelayError):
    """Daily token budget exhausted for a quota scope."""

    def __init__(self, scope: str, limit: int, used: int) -> None:
        super().__init__(f"daily token quota exceeded for {scope} scope")
        self.scope = scope
        self.limit = limit
        self.used = used


class RetrievalError(RelayError):
    """Retrieval layer failure."""


class RetrievalUnavailableError(RetrievalError):
    """Embedding or vector search could not be completed."""


class EmbeddingError(RetrievalError):
    """Embedding service call failed."""


class ChunkIndexPartialFailure(RetrievalError):
    """Embedding failed mid-index; remaining chunks were not written."""

    def __init__(self, message: str, indexed: int) -> None:
        super().__init__(message)
        self.indexed = indexed


class EscalationDeliveryFailure(RelayError):
    """Escalation notification exhausted its delivery attempts."""


class DatabaseError(RelayError):
    """Database operation failed."""


class SessionNotFoundError(RelayError):
    """Conversation session does not exist."""


class SessionOwnershipError(RelayError):
    """Conversation session belongs to another user."""
