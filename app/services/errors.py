"""Exceptions raised by the progress core.

Callers (request handlers, the worker) decide what the user sees; the
core only classifies.  ConcurrencyConflict is the one kind a caller is
expected to retry.
"""

from __future__ import annotations


class ProgressCoreError(Exception):
    """Base class for every error the core raises on purpose."""


class NotEnrolledError(ProgressCoreError):
    """No active (non-refunded) enrollment for this user and course."""


class EnrollmentNotFoundError(ProgressCoreError):
    pass


class AlreadyEnrolledError(ProgressCoreError):
    pass


class CourseNotFoundError(ProgressCoreError):
    pass


class CourseNotAvailableError(ProgressCoreError):
    """The course exists but is not open for enrollment."""


class LessonNotFoundError(ProgressCoreError):
    """The lesson does not exist or belongs to another course."""


class ConcurrencyConflict(ProgressCoreError):
    """A unit of work kept losing races or timing out.  Safe to retry."""


class FatalGenerationError(ProgressCoreError):
    """Certificate code generation kept colliding.  Not retried further."""


class CertificateNotEligibleError(ProgressCoreError):
    """Certificates are only issued for enrollments that reached completed."""


class UnknownMetricError(ProgressCoreError, ValueError):
    pass


class PermissionDeniedError(ProgressCoreError):
    pass


class InvalidReviewError(ProgressCoreError, ValueError):
    pass


class StaleDataWarning(UserWarning):
    """Analytics served from a snapshot older than the staleness limit."""
