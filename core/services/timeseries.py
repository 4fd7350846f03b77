"""
Port for per-bed vital-sign series.

The registry and the refresh loop only depend on this protocol; the CSV
adapter in `adapters.timeseries` is the reference implementation.
"""

from typing import Protocol

from core.domain.errors import MonitoringError
from core.domain.models import VitalSample
from core.services.result import Result


class VitalsSource(Protocol):
    """
    Protocol defining how bed series are read and managed.

    Why Protocol over ABC: Structural typing, easier mocking, less coupling.
    Every method is fallible and reports failure through Result.
    """

    async def read_tail(
        self, bed_id: str, max_count: int
    ) -> Result[list[VitalSample], MonitoringError]:
        """At most `max_count` most recent samples, oldest first."""
        ...

    async def read_window(
        self, bed_id: str, since: float
    ) -> Result[list[VitalSample], MonitoringError]:
        """All samples with `timestamp >= since`, oldest first."""
        ...

    async def provision(
        self, bed_id: str, patient_id: str, patient_name: str
    ) -> Result[str, MonitoringError]:
        """Create a backing series for `bed_id` (may seed history)."""
        ...

    async def discard(self, bed_id: str) -> Result[str, MonitoringError]:
        """Delete the backing series for `bed_id`."""
        ...
