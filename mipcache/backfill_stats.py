"""
BackfillStats - Statistics for one backfill pass.
"""

import time
from dataclasses import dataclass, field
from typing import List


@dataclass
class BackfillStats:
    """
    Statistics for a backfill pass.

    Attributes:
        total_to_process: Ladder sizes considered
        generated: Renditions generated and persisted
        skipped: Already cached (here or by a concurrent request)
        errors: Failed to generate or persist
        bytes_generated: Total bytes of renditions written
        start_time: Start timestamp
        error_details: List of error messages
    """
    total_to_process: int = 0
    generated: int = 0
    skipped: int = 0
    errors: int = 0
    bytes_generated: int = 0
    start_time: float = field(default_factory=time.time)
    error_details: List[str] = field(default_factory=list)

    @property
    def elapsed_seconds(self) -> float:
        """Elapsed time in seconds."""
        return time.time() - self.start_time

    @property
    def completed_count(self) -> int:
        """Total completed (generated + skipped + errors)."""
        return self.generated + self.skipped + self.errors

    @property
    def remaining_count(self) -> int:
        """Remaining to process."""
        return self.total_to_process - self.completed_count

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.error_details.append(message)
