"""Error taxonomy for the progress engine.

None of these escape a public tracker command: inputs are clamped or
ignored, storage problems degrade to in-memory operation, and schema drift is
repaired field by field while loading.
"""


class ProgressError(Exception):
    """Base class for progress engine errors."""
    pass


class CommandValidationError(ProgressError):
    """Raised when a command payload cannot be coerced into a known variant."""
    pass


class PersistenceError(ProgressError):
    """Raised when the durable store cannot be read or written."""
    pass


class SchemaMismatchError(ProgressError):
    """Raised when one stored field does not match the current layout."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
