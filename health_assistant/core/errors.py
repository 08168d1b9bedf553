"""Error taxonomy shared by provider adapters and the fallback chain."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from health_assistant.core.models import ProviderType


class ErrorCode(str, Enum):
    API_KEY_INVALID = "API_KEY_INVALID"
    API_KEY_MISSING = "API_KEY_MISSING"
    RATE_LIMITED = "RATE_LIMITED"
    CONTEXT_TOO_LONG = "CONTEXT_TOO_LONG"
    MODEL_NOT_AVAILABLE = "MODEL_NOT_AVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    LOCAL_MODEL_NOT_LOADED = "LOCAL_MODEL_NOT_LOADED"
    UNKNOWN = "UNKNOWN"


# Whether a failure with this code should let the chain try the next backend
DEFAULT_RETRYABLE = {
    ErrorCode.API_KEY_INVALID: False,
    ErrorCode.API_KEY_MISSING: False,
    ErrorCode.RATE_LIMITED: True,
    ErrorCode.CONTEXT_TOO_LONG: False,
    ErrorCode.MODEL_NOT_AVAILABLE: True,
    ErrorCode.NETWORK_ERROR: True,
    ErrorCode.PROVIDER_ERROR: True,
    ErrorCode.CONTENT_FILTERED: False,
    ErrorCode.LOCAL_MODEL_NOT_LOADED: False,
    ErrorCode.UNKNOWN: True,
}


class ProviderError(Exception):
    """Typed failure raised by a provider adapter."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        provider: Optional[ProviderType] = None,
        retryable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.provider = provider
        self.retryable = DEFAULT_RETRYABLE[code] if retryable is None else retryable

    def __repr__(self) -> str:
        return (
            f"ProviderError(code={self.code.value}, provider="
            f"{self.provider.value if self.provider else None}, "
            f"retryable={self.retryable}, message={self.message!r})"
        )


class ProviderFailure(BaseModel):
    """One failed backend attempt recorded by the fallback chain."""

    provider: ProviderType
    code: Optional[ErrorCode] = None
    message: str


class ProviderChainError(ProviderError):
    """Every backend in the chain failed."""

    def __init__(self, failures: List[ProviderFailure]):
        if failures:
            summary = "; ".join(f"{f.provider.value}: {f.message}" for f in failures)
            message = f"All providers failed: {summary}"
        else:
            message = "All providers failed: no provider in the chain is available"
        super().__init__(message, ErrorCode.PROVIDER_ERROR, retryable=False)
        self.failures = list(failures)
