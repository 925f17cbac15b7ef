from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.parse import urlparse
from uuid import UUID

import pydantic
from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)

from watchdog_service.errors import ValidationError

# Partition id of a singleton (unpartitioned) service
NIL_PARTITION = "00000000-0000-0000-0000-000000000000"

# Result code sentinels for probes that produced no HTTP status
RESULT_NOT_ATTEMPTED = 0
RESULT_TIMEOUT = -1
RESULT_TRANSPORT_ERROR = -2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_datetime(dt: datetime) -> str:
    """Convert datetime to string in our standard format"""
    return dt.isoformat()


def parse_datetime(dt_str: str) -> datetime:
    """Parse datetime from our standard format. Naive values are taken as UTC"""
    dt = datetime.fromisoformat(dt_str)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def make_key(service_uri: str, partition: str) -> str:
    """Identity of a health check: one per service partition"""
    return f"{service_uri.rstrip('/')}/{partition}"


class HealthState(str, Enum):
    """Outcome of a health check, ordered from best to worst"""
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"  # Never attempted

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthState.OK: 0,
    HealthState.WARNING: 1,
    HealthState.ERROR: 2,
    HealthState.UNKNOWN: 3,
}


def worst_state(current: HealthState, proposed: HealthState) -> HealthState:
    """Return the least healthy of two states"""
    return proposed if proposed.severity > current.severity else current


class CheckDefaults(BaseModel):
    """Values applied to timing fields left empty (or zero) at registration"""
    model_config = ConfigDict(frozen=True)

    frequency: timedelta = timedelta(seconds=60)
    expected_duration: timedelta = timedelta(milliseconds=200)
    maximum_duration: timedelta = timedelta(seconds=5)


DEFAULTS = CheckDefaults()


class ProbeResult(BaseModel):
    """Classified outcome of a single probe"""
    model_config = ConfigDict(frozen=True)

    status_code: int
    duration: timedelta
    classification: HealthState
    started_at: datetime
    completed_at: datetime
    message: str = ""

    @property
    def timed_out(self) -> bool:
        return self.status_code == RESULT_TIMEOUT


class CheckDefinition(BaseModel):
    """Health check configuration and the result of its latest execution.

    Instances are immutable. A probe result is recorded by building a new
    value with ``apply_result``.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    service_uri: str = Field(..., alias="serviceName")
    partition: str = NIL_PARTITION
    endpoint: Optional[str] = None  # Required when the service exposes several endpoints
    suffix_path: str = Field(..., alias="suffixPath")
    method: str = "GET"
    content: Optional[str] = None
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    frequency: Optional[timedelta] = Field(default=None, validate_default=True)
    expected_duration: Optional[timedelta] = Field(
        default=None, alias="expectedDuration", validate_default=True
    )
    maximum_duration: Optional[timedelta] = Field(
        default=None, alias="maximumDuration", validate_default=True
    )
    headers: Dict[str, str] = Field(default_factory=dict)
    warning_status_codes: FrozenSet[int] = Field(default=frozenset(), alias="warningStatusCodes")
    error_status_codes: FrozenSet[int] = Field(default=frozenset(), alias="errorStatusCodes")

    # Result of the latest execution
    last_attempt: Optional[datetime] = Field(default=None, alias="lastAttempt")
    failure_count: int = Field(default=0, ge=0, alias="failureCount")
    result_code: int = Field(default=RESULT_NOT_ATTEMPTED, alias="resultCode")
    duration: timedelta = timedelta(0)

    @classmethod
    def parse(
        cls, data: Dict[str, Any], defaults: Optional[CheckDefaults] = None
    ) -> "CheckDefinition":
        """Validate registration input, raising our ValidationError on bad input"""
        try:
            return cls.model_validate(data, context={"defaults": defaults or DEFAULTS})
        except pydantic.ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'definition'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationError(f"Invalid health check: {problems}") from e

    # Validation

    @field_validator("name", "suffix_path")
    @classmethod
    def _not_blank(cls, value: str, info: ValidationInfo) -> str:
        if not value or not value.strip():
            raise ValueError(f"{info.field_name} is required")
        return value

    @field_validator("service_uri")
    @classmethod
    def _absolute_uri(cls, value: str) -> str:
        parsed = urlparse(value)
        if not parsed.scheme or not (parsed.netloc or parsed.path.startswith("/")):
            raise ValueError(f"service uri must be absolute, got {value!r}")
        return value

    @field_validator("partition", mode="before")
    @classmethod
    def _partition_id(cls, value: Any) -> Any:
        if value is None:
            return NIL_PARTITION
        if isinstance(value, UUID):
            value = str(value)
        if isinstance(value, str) and (not value.strip() or "/" in value):
            raise ValueError("partition must be a non-empty id without '/'")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _http_method(cls, value: Any) -> Any:
        if value is None or value == "":
            return "GET"
        if not isinstance(value, str) or not value.isalpha():
            raise ValueError(f"invalid HTTP method {value!r}")
        return value.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def _no_headers(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("headers")
    @classmethod
    def _ascii_headers(cls, value: Dict[str, str]) -> Dict[str, str]:
        for name, header in value.items():
            if not name.isascii() or not header.isascii():
                raise ValueError(f"header {name!r} must be ASCII")
        return value

    @field_validator("warning_status_codes", "error_status_codes", mode="before")
    @classmethod
    def _no_codes(cls, value: Any) -> Any:
        return frozenset() if value is None else value

    @field_validator("warning_status_codes", "error_status_codes")
    @classmethod
    def _status_codes(cls, value: FrozenSet[int]) -> FrozenSet[int]:
        invalid = sorted(code for code in value if not 100 <= code <= 599)
        if invalid:
            raise ValueError(f"invalid HTTP status codes {invalid}")
        return value

    @field_validator("frequency", "expected_duration", "maximum_duration")
    @classmethod
    def _default_timing(cls, value: Optional[timedelta], info: ValidationInfo) -> timedelta:
        if value is None or value == timedelta(0):
            defaults = (info.context or {}).get("defaults") or DEFAULTS
            return getattr(defaults, info.field_name)
        if value < timedelta(0):
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @model_validator(mode="after")
    def _content_has_media_type(self) -> "CheckDefinition":
        if self.content and self.content.strip() and not (self.media_type and self.media_type.strip()):
            raise ValueError("mediaType must be specified if content is provided")
        if self.expected_duration > self.maximum_duration:
            logger.warning(
                f"Health check {self.name}: expected duration {self.expected_duration} "
                f"exceeds maximum duration {self.maximum_duration}"
            )
        return self

    @field_serializer("warning_status_codes", "error_status_codes")
    def _sorted_codes(self, codes: FrozenSet[int]) -> List[int]:
        return sorted(codes)

    # Identity

    @computed_field
    @property
    def key(self) -> str:
        return make_key(self.service_uri, self.partition)

    @property
    def name_segments(self) -> List[str]:
        """Host (if any) followed by the path segments of the service uri"""
        parsed = urlparse(self.service_uri)
        segments = [parsed.netloc] if parsed.netloc else []
        segments.extend(segment for segment in parsed.path.split("/") if segment)
        return segments

    def matches(
        self,
        application: Optional[str] = None,
        service: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> bool:
        """True when every non-empty filter matches"""
        segments = self.name_segments
        if application and (len(segments) < 1 or segments[0] != application):
            return False
        if service and (len(segments) < 2 or segments[1] != service):
            return False
        if partition and self.partition != str(partition):
            return False
        return True

    # Results

    def history(self) -> Dict[str, Any]:
        return {
            "last_attempt": self.last_attempt,
            "failure_count": self.failure_count,
            "result_code": self.result_code,
            "duration": self.duration,
        }

    def with_history_of(self, other: "CheckDefinition") -> "CheckDefinition":
        """Copy of this definition carrying the result fields of another"""
        return self.model_copy(update=other.history())

    def apply_result(self, result: ProbeResult) -> "CheckDefinition":
        """New definition recording a probe result.

        Errors extend the run of consecutive failures, Ok ends it and
        Warning leaves it as it was.
        """
        failure_count = self.failure_count
        if result.classification == HealthState.ERROR:
            failure_count += 1
        elif result.classification == HealthState.OK:
            failure_count = 0

        return self.model_copy(
            update={
                "last_attempt": result.completed_at,
                "failure_count": failure_count,
                "result_code": result.status_code,
                "duration": result.duration,
            }
        )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"key"})

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "CheckDefinition":
        return cls.model_validate(data)


class ScheduleEntry(BaseModel):
    """A pending execution of a health check"""
    model_config = ConfigDict(frozen=True)

    due_at: datetime
    key: str

    @property
    def sort_key(self) -> tuple:
        return (self.due_at, self.key)

    def to_document(self) -> Dict[str, Any]:
        return {"due_at": format_datetime(self.due_at), "key": self.key}

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "ScheduleEntry":
        return cls(due_at=parse_datetime(data["due_at"]), key=data["key"])


class AggregateHealth(BaseModel):
    """Worst-case health across all checks"""
    state: HealthState
    description: str = ""
