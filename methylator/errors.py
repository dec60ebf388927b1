"""Exceptions raised when an analysis can't proceed."""


class ConfigurationError(ValueError):
    """Raised when the parameters of an analysis are invalid: rank-deficient design matrix, contrast referencing an
    unknown design column, threshold removing every sample..."""


class DataError(ValueError):
    """Raised when input data is unusable: missing sample file, malformed sample sheet, probe identifiers that don't
    match the annotation..."""
