"""Error taxonomy shared by every relay worker.

Each failure a worker can hit while handling one work item is raised as a
:class:`RelayError` subclass.  The class carries an :class:`ErrorKind`, and
``ERROR_OUTCOMES`` maps every kind onto the directory-level outcome the
caller applies to the offending file.
"""
from __future__ import annotations

from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    RETRYABLE_IO = "retryable_io"
    PARSING = "parsing"
    MALFORMED = "malformed"
    CLASSIFICATION = "classification"
    QUOTA_EXCEEDED = "quota_exceeded"
    SIGNING = "signing"
    ATTACHMENT_MISSING = "attachment_missing"
    CORRELATION_UNRESOLVED = "correlation_unresolved"
    CONVERSION = "conversion"


class Outcome(str, Enum):
    """Where a work item ends up after one processing step."""

    PROCESSED = "processed"
    FAILED = "failed"
    OVERLIMIT = "overlimit"
    DEFERRED = "deferred"


ERROR_OUTCOMES: dict[ErrorKind, Outcome] = {
    ErrorKind.RETRYABLE_IO: Outcome.DEFERRED,
    ErrorKind.PARSING: Outcome.DEFERRED,
    ErrorKind.MALFORMED: Outcome.FAILED,
    ErrorKind.CLASSIFICATION: Outcome.FAILED,
    ErrorKind.QUOTA_EXCEEDED: Outcome.OVERLIMIT,
    ErrorKind.SIGNING: Outcome.DEFERRED,
    ErrorKind.ATTACHMENT_MISSING: Outcome.DEFERRED,
    # unmatched responses are still recorded and consumed
    ErrorKind.CORRELATION_UNRESOLVED: Outcome.PROCESSED,
    ErrorKind.CONVERSION: Outcome.FAILED,
}


class RelayError(RuntimeError):
    """Base class for failures raised while relaying a single work item."""

    kind: ClassVar[ErrorKind]

    def __init__(
        self,
        description: str,
        *,
        source: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        self.source = source
        self.code = code

    @property
    def outcome(self) -> Outcome:
        return outcome_for(self.kind)


class RetryableIOError(RelayError):
    """File not ready, locked, or a copy that could not be verified."""

    kind = ErrorKind.RETRYABLE_IO


class ParsingError(RelayError):
    """Structured content could not be parsed; the producer may still be writing."""

    kind = ErrorKind.PARSING


class MalformedDocumentError(ParsingError):
    """Content that stays unparseable after the settle window."""

    kind = ErrorKind.MALFORMED


class ClassificationError(RelayError):
    kind = ErrorKind.CLASSIFICATION


class QuotaExceededError(RelayError):
    kind = ErrorKind.QUOTA_EXCEEDED


class SigningError(RelayError):
    kind = ErrorKind.SIGNING


class AttachmentMissingError(RelayError):
    kind = ErrorKind.ATTACHMENT_MISSING


class CorrelationUnresolvedError(RelayError):
    kind = ErrorKind.CORRELATION_UNRESOLVED


class ConversionError(RelayError):
    """Converter, packaging or archive step failed for a structurally valid item."""

    kind = ErrorKind.CONVERSION


def outcome_for(kind: ErrorKind) -> Outcome:
    """Return the outcome for ``kind``; raises ``KeyError`` for unmapped kinds."""

    return ERROR_OUTCOMES[kind]
