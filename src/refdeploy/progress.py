"""Progress aggregation - Turn transfer counters into status text and percent.

The object store reports raw counters periodically; callers receive immutable
ProgressSnapshot values. Percent never goes backwards within one operation.
"""

from collections.abc import Callable

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class TransferCounters(BaseModel):
    """Raw counters reported by the object store during a transfer."""

    model_config = ConfigDict(frozen=True)

    status: str | None = None
    outstanding_fetches: int = 0
    outstanding_metadata_fetches: int = 0
    outstanding_writes: int = 0
    scanned_metadata: int = 0
    fetched_delta_parts: int = 0
    total_delta_parts: int = 0
    total_delta_part_size: int = 0
    bytes_transferred: int = 0
    fetched: int = 0
    metadata_fetched: int = 0
    requested: int = 0
    elapsed_seconds: int = 0


class ProgressSnapshot(BaseModel):
    """Progress value delivered to callers."""

    model_config = ConfigDict(frozen=True)

    status: str
    percent: int = Field(ge=0, le=100)
    estimating: bool = False


ProgressCallback = Callable[[ProgressSnapshot], None]
TransferSink = Callable[[TransferCounters], None]

_SI_UNITS = ("kB", "MB", "GB", "TB", "PB", "EB")


def format_size(size: int) -> str:
    """Format a byte count with SI (base 1000) units.

    Example:
        >>> format_size(999)
        '999 bytes'
        >>> format_size(1_500_000)
        '1.5 MB'
    """
    if size < 1000:
        return "1 byte" if size == 1 else f"{size} bytes"

    value = float(size)
    unit = _SI_UNITS[0]
    for unit in _SI_UNITS:
        value /= 1000
        if value < 1000:
            break
    return f"{value:.1f} {unit}"


def _format_rate(bytes_transferred: int, elapsed_seconds: int) -> str:
    if elapsed_seconds <= 0:
        return "-"
    bytes_sec = bytes_transferred // elapsed_seconds
    # Ignore the first second
    if not bytes_sec:
        return "-"
    return format_size(bytes_sec)


class ProgressAggregator:
    """Convert TransferCounters into monotonic ProgressSnapshot values.

    One aggregator belongs to one operation. Pass ``aggregator.update`` to the
    object store as its progress sink.

    Example:
        >>> seen = []
        >>> aggregator = ProgressAggregator(seen.append)
        >>> aggregator.update(TransferCounters(status="Resolving"))
        ProgressSnapshot(status='Resolving', percent=0, estimating=False)
    """

    def __init__(self, callback: ProgressCallback | None = None):
        self.callback = callback
        self.last_percent = 0

    def compute(self, counters: TransferCounters) -> tuple[str, int, bool]:
        """Compute (status, raw percent, estimating) without clamping."""
        percent = 0
        estimating = False

        if counters.status:
            return counters.status, percent, estimating

        if counters.outstanding_fetches:
            transferred = format_size(counters.bytes_transferred)
            rate = _format_rate(counters.bytes_transferred, counters.elapsed_seconds)

            if counters.total_delta_parts > 0:
                total = format_size(counters.total_delta_part_size)
                status = (
                    f"Receiving delta parts: {counters.fetched_delta_parts}/{counters.total_delta_parts} "
                    f"{rate}/s {transferred}/{total}"
                )
                if counters.total_delta_part_size > 0:
                    percent = (100 * counters.bytes_transferred) // counters.total_delta_part_size
            elif counters.outstanding_metadata_fetches:
                # Amount of data is unknown until all metadata is scanned
                percent = 1
                estimating = True
                status = f"Receiving metadata objects: {counters.metadata_fetched}/(estimating) {rate}/s {transferred}"
            else:
                if counters.requested > 0:
                    percent = (100 * counters.fetched) // counters.requested
                status = (
                    f"Receiving objects: {percent}% ({counters.fetched}/{counters.requested}) "
                    f"{rate}/s {transferred}"
                )
            return status, percent, estimating

        if counters.outstanding_writes:
            return f"Writing objects: {counters.outstanding_writes}", percent, estimating

        return f"Scanning metadata: {counters.scanned_metadata}", percent, estimating

    def update(self, counters: TransferCounters) -> ProgressSnapshot:
        """Aggregate one counter sample and notify the callback.

        Args:
            counters: Latest counters from the object store

        Returns:
            The snapshot delivered to the callback
        """
        status, percent, estimating = self.compute(counters)

        percent = min(max(percent, self.last_percent), 100)
        self.last_percent = percent

        snapshot = ProgressSnapshot(status=status, percent=percent, estimating=estimating)
        if self.callback is not None:
            self.callback(snapshot)
        return snapshot
