"""Error hierarchy for the Realm PKM service.

Every error carries a machine-readable :class:`ErrorCode`, a details dict
that is safe to return to API clients, and the HTTP status it maps to.
"""
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


class ErrorCode(Enum):
    """Stable numeric error codes, grouped by the thousands digit."""

    # Notes (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_ACCESS_DENIED = 1003
    NOTE_TITLE_REQUIRED = 1004
    NOTE_TITLE_TOO_LONG = 1005
    NOTE_CONTENT_TOO_LONG = 1006
    NOTE_VERSION_NOT_FOUND = 1007

    # Links (2xxx)
    LINK_INVALID = 2001
    LINK_ALREADY_EXISTS = 2002
    LINK_NOT_FOUND = 2003
    LINK_SELF_REFERENCE = 2004
    LINK_CIRCULAR_DEPENDENCY = 2005

    # Tags (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002

    # Storage (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    FTS_CORRUPTED = 4007

    # Search (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Configuration (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Input validation (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_STATUS = 7002
    INVALID_LINK_TYPE = 7003
    INVALID_PRIORITY = 7004
    INVALID_RANGE = 7005

    # Authentication (8xxx)
    AUTH_INVALID_CREDENTIALS = 8001
    AUTH_TOKEN_INVALID = 8002
    AUTH_TOKEN_EXPIRED = 8003
    AUTH_USER_INACTIVE = 8004
    AUTH_EMAIL_TAKEN = 8005
    AUTH_WEAK_PASSWORD = 8006
    AUTH_USER_NOT_FOUND = 8007


_STATUS_BY_CODE = {
    ErrorCode.NOTE_NOT_FOUND: 404,
    ErrorCode.NOTE_VERSION_NOT_FOUND: 404,
    ErrorCode.LINK_NOT_FOUND: 404,
    ErrorCode.TAG_NOT_FOUND: 404,
    ErrorCode.AUTH_USER_NOT_FOUND: 404,
    ErrorCode.LINK_ALREADY_EXISTS: 409,
    ErrorCode.AUTH_EMAIL_TAKEN: 409,
    ErrorCode.SEARCH_FAILED: 500,
}

_MAX_ECHOED_VALUE = 100


def _details(**values: Any) -> Dict[str, Any]:
    """Keep only the values that were given."""
    return {key: value for key, value in values.items() if value not in (None, "")}


class RealmError(Exception):
    """Base class for all service errors.

    Attributes:
        message: Human-readable message, safe for clients
        code: Machine-readable error code
        details: Extra context, safe for clients
    """

    # Fallback status when the code has no mapping of its own
    default_status: ClassVar[int] = 400
    # When set, the class decides the status regardless of the code
    fixed_status: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    @property
    def http_status(self) -> int:
        if self.fixed_status:
            return self.default_status
        return _STATUS_BY_CODE.get(self.code, self.default_status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if not self.details:
            return f"[{self.code.name}] {self.message}"
        context = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"[{self.code.name}] {self.message} ({context})"


class NoteNotFoundError(RealmError):
    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class NoteAccessDeniedError(RealmError):
    """A user touched a note owned by someone else."""

    default_status = 403
    fixed_status = True

    def __init__(self, note_id: str, user_id: str):
        super().__init__(
            f"Access denied to note '{note_id}'",
            code=ErrorCode.NOTE_ACCESS_DENIED,
            details={"note_id": note_id, "user_id": user_id}
        )
        self.note_id = note_id
        self.user_id = user_id


class ValidationError(RealmError):
    """Rejected input. ``value`` is echoed back truncated."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        echoed = None if value is None else str(value)[:_MAX_ECHOED_VALUE]
        super().__init__(message, code=code, details=_details(field=field, value=echoed))
        self.field = field
        self.value = value


class NoteValidationError(ValidationError):
    """Note title, content or version lookups that failed validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.NOTE_VALIDATION_FAILED
    ):
        super().__init__(message, field=field, value=value, code=code)


class LinkError(RealmError):
    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        link_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.LINK_INVALID
    ):
        super().__init__(
            message,
            code=code,
            details=_details(source_id=source_id, target_id=target_id, link_type=link_type),
        )
        self.source_id = source_id
        self.target_id = target_id
        self.link_type = link_type


class LinkNotFoundError(LinkError):
    """The link id is not an outgoing link of the given note."""

    def __init__(self, link_id: int, source_id: Optional[str] = None):
        super().__init__(
            f"Link with ID '{link_id}' not found",
            source_id=source_id,
            code=ErrorCode.LINK_NOT_FOUND
        )
        self.details["link_id"] = link_id
        self.link_id = link_id


class TagError(RealmError):
    def __init__(
        self,
        message: str,
        tag_name: Optional[str] = None,
        code: ErrorCode = ErrorCode.TAG_INVALID
    ):
        super().__init__(message, code=code, details=_details(tag_name=tag_name))
        self.tag_name = tag_name


class StorageError(RealmError):
    """Database failures. The original error is kept for logs only."""

    default_status = 500

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, code=code, details=_details(operation=operation))
        self.operation = operation
        self.original_error = original_error

    def __str__(self) -> str:
        text = super().__str__()
        if self.original_error is not None:
            return f"{text}: {str(self.original_error)[:200]}"
        return text


class SearchError(RealmError):
    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        echoed = query[:_MAX_ECHOED_VALUE] if query else None
        super().__init__(message, code=code, details=_details(query=echoed))
        self.query = query


class ConfigurationError(RealmError):
    default_status = 500

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        super().__init__(message, code=code, details=_details(config_key=config_key))
        self.config_key = config_key


class AuthenticationError(RealmError):
    """Rejected credentials or tokens.

    Always a 401. The message never says which part of the credentials
    was wrong.
    """

    default_status = 401
    fixed_status = True

    def __init__(
        self,
        message: str = "Authentication failed",
        code: ErrorCode = ErrorCode.AUTH_TOKEN_INVALID
    ):
        super().__init__(message, code=code)
