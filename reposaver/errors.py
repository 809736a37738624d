class EngineError(Exception):
    """Base class for failures raised by the backup engine."""

    kind = "error"

    def __init__(self, message: str, category: str | None = None):
        super().__init__(message)
        self.category = category


class SourceMissing(EngineError):
    """The live subfolder of a category does not exist."""

    kind = "source_missing"


class NotFound(EngineError):
    """A referenced snapshot or category is absent."""

    kind = "not_found"


class SourceLocked(EngineError):
    """The live subfolder could not be replaced; it was left unchanged."""

    kind = "source_locked"


class PartialFailure(EngineError):
    """A destructive operation stopped partway and left mixed state behind."""

    kind = "partial_failure"


class ArchiveIOError(EngineError):
    """Generic filesystem failure while reading or writing the archive."""

    kind = "io_error"
