"""
QA Resolver — Error Taxonomy

Every error raised by the resolution and queue layers derives from
ResolverError so hosting code can catch the whole family at one seam.

  GenerationUnavailable    no generation credential configured
  InvalidGenerationOutput  malformed / non-JSON / missing required field
  UnresolvedPlaceholder    interpolation found no matching value
  QueueOperationFailed     queue backend unreachable or rejected the call
  NotFound                 job id or knowledge record absent (operator action)
  InvalidJobState          operator action not allowed in the job's state
"""

from __future__ import annotations


class ResolverError(Exception):
    """Base class for resolution and queue errors."""
    pass


class GenerationUnavailable(ResolverError):
    """Raised when generation is required but no credential is configured."""
    pass


class InvalidGenerationOutput(ResolverError):
    """Raised when generator output fails structured-output validation."""

    def __init__(self, message: str, kind: str = "invalid"):
        super().__init__(message)
        self.kind = kind


class UnresolvedPlaceholder(ResolverError):
    """Raised when a {{placeholder}} has no value in the resolved data."""

    def __init__(self, placeholder: str):
        super().__init__(f"Placeholder {{{{{placeholder}}}}} could not be resolved")
        self.placeholder = placeholder


class QueueOperationFailed(ResolverError):
    """Raised when the queue backend cannot complete an operation."""
    pass


class NotFound(ResolverError):
    """Raised when an operator action targets a job or record that does not exist."""
    pass


class InvalidJobState(ResolverError):
    """Raised when an operator action is not valid for the job's current state."""
    pass
