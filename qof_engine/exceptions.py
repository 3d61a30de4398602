"""Exception hierarchy for the care-gap engine."""


class QualityEngineError(Exception):
    """Base class for all engine errors."""


class CatalogError(QualityEngineError):
    """Raised when an indicator or category definition cannot be loaded."""


class SnapshotError(QualityEngineError):
    """Raised when a population snapshot cannot be read at the input boundary."""


class ExportError(QualityEngineError):
    """Raised when an export cannot be produced; computed findings stay valid."""
