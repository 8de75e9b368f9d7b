"""Custom exception classes for flowdata."""

from __future__ import annotations

from typing import Iterable


class FlowDataError(Exception):
    """Base exception for all flowdata errors."""
    pass


class ConfigurationError(FlowDataError):
    """Raised for configuration-related errors."""
    pass


class ValidationError(FlowDataError):
    """Raised when an argument has the wrong shape, type or value."""
    pass


class InvalidMethodError(ValidationError):
    """Raised when an unsupported method or mode name is requested."""
    pass


class InvalidBinEdgesError(ValidationError):
    """Raised when bin edges cannot define at least one bin."""
    pass


class IndexOutOfRangeError(ValidationError, IndexError):
    """Raised when a sample id does not address an existing sample."""
    pass


class UnknownReferenceError(FlowDataError, LookupError):
    """Raised when a name is not registered in the dataset."""

    kind = "name"

    def __init__(self, names: str | Iterable[str] | None = None) -> None:
        if isinstance(names, str):
            names = [names]
        self.names = list(names or [])
        if self.names:
            msg = f"Unknown {self.kind}: {', '.join(map(str, self.names))}"
        else:
            msg = f"Unknown {self.kind}"
        super().__init__(msg)


class UnknownChannelError(UnknownReferenceError):
    """Raised when referencing a channel that is not part of the dataset."""

    kind = "channel"


class UnknownGateError(UnknownReferenceError):
    """Raised when referencing an unregistered gate."""

    kind = "gate"


class UnknownDataTypeError(UnknownReferenceError):
    """Raised when referencing an unregistered data type."""

    kind = "data type"


class UnknownColumnError(UnknownReferenceError):
    """Raised when referencing a column missing from the sample map."""

    kind = "sample map column"


class CountMismatchError(FlowDataError):
    """Raised when a collection has the wrong number of entries."""
    pass


class SampleLookupError(CountMismatchError):
    """Raised when a treatment combination does not match exactly one sample."""
    pass


class ShapeMismatchError(FlowDataError):
    """Raised when an array length disagrees with a sample's cell count."""
    pass


class PreconditionNotMetError(FlowDataError):
    """Raised when an operation is invoked before a required prior step."""
    pass


class FileOperationError(FlowDataError):
    """Raised for file reading or writing errors."""
    pass


class MissingFileError(FileOperationError, FileNotFoundError):
    """Raised when a file argument does not exist."""

    def __init__(self, path: str | None = None) -> None:
        msg = f"File does not exist: {path}" if path else "File does not exist"
        super().__init__(msg)
        self.path = path


class DataProcessingError(FlowDataError):
    """Raised for errors inside a processing routine."""
    pass


class GatingError(DataProcessingError):
    """Raised for errors during the gating stage."""
    pass


class CalibrationError(DataProcessingError):
    """Raised for errors during bead calibration."""
    pass


class CompensationError(DataProcessingError):
    """Raised for errors during the compensation stage."""
    pass
