"""Error types used across the package.

All errors inherit from EaseError so callers can catch everything raised
by this package in one place.
"""


class EaseError(Exception):
    """Base exception for all ease failures."""


class PlanConfigError(EaseError):
    """Raised when a plan definition fails validation.

    Every failed check is kept in ``reasons`` so the whole list can be
    reported at once.
    """

    def __init__(self, msg: str, reasons: list[str] | None = None) -> None:
        self.msg = msg
        self.reasons = list(reasons or [])
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.reasons:
            return f"{self.msg} with reasons:\n" + "\n".join(self.reasons)
        return self.msg


class EncoderExecutionError(EaseError):
    """Raised (or recorded) when an encoder command fails to run cleanly."""

    def __init__(self, name: str, reason: str, exit_code: int | None = None) -> None:
        self.name = name
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(f"Encoding {name} failed: {reason}")


class BufferOverflowError(EaseError):
    """Raised when a write does not fit into a LimitedBuffer."""


class MetadataError(EaseError):
    """Raised when media metadata cannot be queried."""


class QualityToolError(EaseError):
    """Raised when the quality tool cannot be prepared or executed."""


class FrameCountMismatchError(QualityToolError):
    """Raised when source and compressed videos differ in frame count."""

    def __init__(self, source_frames: int, compressed_frames: int) -> None:
        self.source_frames = source_frames
        self.compressed_frames = compressed_frames
        super().__init__(
            f"frame count mismatch: source {source_frames} != compressed {compressed_frames}"
        )


class MeasurementStateError(QualityToolError):
    """Raised when the quality tool lifecycle is used out of order."""


class FrameMetricsDecodeError(EaseError):
    """Raised when a per-frame metrics document cannot be decoded."""


class QualityReportError(EaseError):
    """Raised when a decoded quality report cannot be aggregated."""


class RecordNotFoundError(EaseError, KeyError):
    """Raised when a metric store id does not exist."""

    def __init__(self, action: str, record_id: int) -> None:
        self.action = action
        self.record_id = record_id
        super().__init__(f"{action} record: record not found (id={record_id})")

    def __str__(self) -> str:
        return str(self.args[0])
