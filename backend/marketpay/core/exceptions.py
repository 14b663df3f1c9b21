from enum import StrEnum


class MarketpayError(Exception):
    """Base exception for the marketplace payments backend."""

    pass


class ErrorKind(StrEnum):
    """Discriminator for PaymentError."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    MALFORMED_EVENT = "malformed_event"
    CONFIGURATION = "configuration"


# HTTP status surfaced for each kind by the API exception handler
ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PROVIDER: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.UNRESOLVED_REFERENCE: 422,
    ErrorKind.MALFORMED_EVENT: 400,
    ErrorKind.CONFIGURATION: 503,
}


class PaymentError(MarketpayError):
    """Tagged payment failure: kind, human message, and optional offending field."""

    def __init__(self, kind: ErrorKind, message: str, field: str | None = None):
        self.kind = kind
        self.message = message
        self.field = field
        super().__init__(message)

    @classmethod
    def validation(cls, message: str, field: str | None = None) -> "PaymentError":
        return cls(ErrorKind.VALIDATION, message, field)

    @classmethod
    def not_found(cls, message: str, field: str | None = None) -> "PaymentError":
        return cls(ErrorKind.NOT_FOUND, message, field)

    @classmethod
    def malformed_event(cls, message: str, field: str | None = None) -> "PaymentError":
        return cls(ErrorKind.MALFORMED_EVENT, message, field)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS_CODES[self.kind]

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "field": self.field}

    def __repr__(self) -> str:
        return f"PaymentError(kind={self.kind.value!r}, message={self.message!r}, field={self.field!r})"
