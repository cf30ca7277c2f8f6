"""Error kinds raised by the tag graph engine.

Only ``KeyRangeExceededError`` and ``DuplicateVariableError`` are treated as
programmer defects and propagate to the caller. The remaining kinds describe
expected situations during incremental construction; the builder catches them
at its public boundary, logs a warning and reports ``False``.
"""


class TagGraphError(RuntimeError):
    """Base class for all tag graph errors."""


class DuplicateVariableError(TagGraphError):
    """Raised when a key is inserted into the variable store twice."""


class KeyRangeExceededError(TagGraphError, ValueError):
    """Raised when an entity index or frame does not fit the key encoding."""


class InvalidPoseEstimateError(TagGraphError):
    """Raised when a pose estimate is required but not valid."""


class MissingAnchorVariableError(TagGraphError):
    """Raised when a factor references a key not yet in the store."""


class NonStaticConstraintError(TagGraphError):
    """Raised when a static-only measurement targets a dynamic body."""
