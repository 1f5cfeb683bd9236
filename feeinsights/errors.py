"""Error taxonomy for fee providers and the application layer."""

from enum import Enum
from typing import Dict


class ProviderError(Exception):
    """
    Base class of the closed set of fee provider failures.

    Every variant is a plain data carrier (a ``kind`` tag plus an optional
    message) so a configured failure can be cloned and raised repeatedly.
    """
    kind = "provider_error"

    def __init__(self, message: str = None):
        self.message = message
        super().__init__(*(() if message is None else (message,)))

    def clone(self) -> "ProviderError":
        """Return a fresh instance of the same variant with the same data."""
        return type(self)(*self.args)

    def __str__(self) -> str:
        if self.message is None:
            return self.kind
        return f"{self.kind}: {self.message}"

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class NetworkError(ProviderError):
    """Transport failure talking to the ledger API."""
    kind = "network_error"

    def __init__(self, message: str):
        super().__init__(message)


class FormatError(ProviderError):
    """Payload could not be parsed into the expected shape."""
    kind = "format_error"

    def __init__(self, message: str):
        super().__init__(message)


class AuthError(ProviderError):
    """Upstream rejected our credentials."""
    kind = "auth_error"

    def __init__(self, message: str):
        super().__init__(message)


class RateLimitExceeded(ProviderError):
    """Upstream rate limit hit; callers may back off."""
    kind = "rate_limit_exceeded"

    def __init__(self):
        super().__init__()


class ServiceUnavailable(ProviderError):
    """Upstream outage, or a provider forced unhealthy."""
    kind = "service_unavailable"

    def __init__(self):
        super().__init__()


class ErrorKind(Enum):
    CONFIG = "Config"
    NETWORK = "Network"
    PARSE = "Parse"
    UNKNOWN = "Unknown"


# Failure-class signal per kind, expressed as HTTP status codes for the API layer
_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.CONFIG: 500,
    ErrorKind.NETWORK: 502,
    ErrorKind.PARSE: 422,
    ErrorKind.UNKNOWN: 500,
}


class AppError(Exception):
    """Application-level error crossing into the serving layer."""

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.kind.value} error: {self.message}"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.kind]

    def to_response(self) -> Dict[str, str]:
        """JSON body the API layer returns alongside ``status_code``."""
        return {"error": str(self)}

    @classmethod
    def from_provider_error(cls, error: ProviderError) -> "AppError":
        if isinstance(error, FormatError):
            return cls(ErrorKind.PARSE, str(error))
        return cls(ErrorKind.NETWORK, str(error))


class ConfigError(AppError):
    """Invalid configuration; fatal at startup."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.CONFIG, message)
