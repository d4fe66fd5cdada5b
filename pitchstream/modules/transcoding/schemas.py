"""Messages exchanged with the transcode worker."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TranscodeJob:
    """One queued transcode. Lives only in memory."""
    owner_id: str
    source_key: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    owner_role: Optional[str] = None


@dataclass(frozen=True)
class WorkerStatus:
    running: bool
    busy: bool
    queue_depth: int
    processed: int
    failed: int
