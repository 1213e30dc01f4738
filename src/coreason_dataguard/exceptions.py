# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""
Exception taxonomy for the data quality and protection core.

Every error carries the HTTP status and machine-readable code the server
translates it into. Field-level validation problems are never raised; they
are returned as data (see `coreason_dataguard.models.FieldValidationError`).
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from coreason_dataguard.models import RateLimitDecision


class DataGuardError(Exception):
    """Base class for domain errors raised by the core."""

    status_code: int = 400
    error_code: str = "DATAGUARD_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidThreshold(DataGuardError):
    """A similarity threshold outside [0, 1] was supplied."""

    status_code = 422
    error_code = "INVALID_THRESHOLD"

    def __init__(self, threshold: float) -> None:
        self.threshold = threshold
        super().__init__(f"Threshold must be within [0, 1], got {threshold}")


class MatchNotFound(DataGuardError):
    """The referenced match id is unknown."""

    status_code = 404
    error_code = "MATCH_NOT_FOUND"

    def __init__(self, match_id: str) -> None:
        self.match_id = match_id
        super().__init__(f"Match {match_id} not found")


class AlreadyResolved(DataGuardError):
    """A resolution decision already exists for the compared content."""

    status_code = 409
    error_code = "ALREADY_RESOLVED"

    def __init__(self, match_id: str, action: str) -> None:
        self.match_id = match_id
        self.action = action
        super().__init__(f"Match {match_id} was already resolved ({action})")


class InvalidSurvivor(DataGuardError):
    """The survivor id of a merge is not one of the two matched records."""

    status_code = 422
    error_code = "INVALID_SURVIVOR"

    def __init__(self, match_id: str, survivor_id: str) -> None:
        self.match_id = match_id
        self.survivor_id = survivor_id
        super().__init__(f"Record {survivor_id} is not part of match {match_id}")


class FileValidationError(DataGuardError):
    """Base class for file metadata rejections."""

    status_code = 422
    error_code = "INVALID_FILE"


class UnsupportedFileType(FileValidationError):
    error_code = "UNSUPPORTED_FILE_TYPE"


class FileTooLarge(FileValidationError):
    error_code = "FILE_TOO_LARGE"

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        max_mb = max_bytes / (1024 * 1024)
        actual_mb = size_bytes / (1024 * 1024)
        super().__init__(f"File size ({actual_mb:.1f}MB) exceeds maximum allowed size ({max_mb:.1f}MB)")


class RateLimitExceeded(DataGuardError):
    """The caller exhausted its rolling-window quota or is inside a block period."""

    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, decision: "RateLimitDecision") -> None:
        self.decision = decision
        self.retry_after_seconds: Optional[int] = decision.retry_after_seconds
        super().__init__("Rate limit exceeded. Please try again later.")


class IdentityBlocked(DataGuardError):
    """The caller ip is on the persistent block list."""

    status_code = 403
    error_code = "IP_BLOCKED"

    def __init__(self, ip: str, decision: Optional["RateLimitDecision"] = None) -> None:
        self.ip = ip
        self.decision = decision
        super().__init__("Access denied")


class PersistenceUnavailable(DataGuardError):
    """The audit sink could not be read or written."""

    status_code = 503
    error_code = "PERSISTENCE_UNAVAILABLE"
