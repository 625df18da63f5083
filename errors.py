"""Error taxonomy for the price intelligence engine.

Input errors are raised at the mutating call. Generation and timeout failures
are reported (attached to cache results and published as status events)
rather than raised to callers that only want a recommendation.
"""

from enum import Enum


class EngineError(Exception):
    """Base class for engine errors."""


class InvalidInput(EngineError, ValueError):
    """A value was rejected at the boundary; nothing was applied."""


class InvalidPrice(InvalidInput):
    pass


class InvalidQuantity(InvalidInput):
    pass


class UnknownEntity(EngineError, KeyError):
    """A product, tracking item or inventory item id was not found."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown entity"


class GenerationErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    INVALID_RESPONSE = "invalid_response"


class GenerationError(EngineError):
    """Raised by an AI generation capability."""

    def __init__(self, kind: GenerationErrorKind, message: str = ""):
        self.kind = GenerationErrorKind(kind)
        self.message = message or self.kind.value
        super().__init__(f"{self.kind.value}: {self.message}")


class GenerationFailure(EngineError):
    """A refresh failed; the previous cache value (if any) was served instead."""

    def __init__(self, key: str, cause: BaseException):
        self.key = key
        self.cause = cause
        super().__init__(f"generation for {key!r} failed: {cause}")


class ConcurrencyTimeout(EngineError):
    """A refresh exceeded its time bound and its result will be discarded."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"generation for {key!r} exceeded {timeout:.1f}s")


class GenerationCancelled(EngineError):
    """A refresh was cancelled before it completed; its result was discarded."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"generation for {key!r} was cancelled")
