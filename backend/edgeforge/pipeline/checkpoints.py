"""
Pipeline checkpoints.

After each completed stage the orchestrator saves the last completed stage,
per-page progress and the intermediate state needed to resume (the working
file manifest, renames, stats). A worker that crashes mid-build resumes from
the checkpoint instead of restarting.

Checkpoints older than max_age are stale: load() deletes them and returns
None, forcing a fresh run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .models import Stage

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    build_id: str
    last_stage: Optional[Stage] = None
    page_progress: Dict[str, str] = field(default_factory=dict)  # page path -> last completed stage
    state: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "build_id": self.build_id,
            "last_stage": self.last_stage.value if self.last_stage else None,
            "page_progress": dict(self.page_progress),
            "state": self.state,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            build_id=data["build_id"],
            last_stage=Stage(data["last_stage"]) if data.get("last_stage") else None,
            page_progress=dict(data.get("page_progress") or {}),
            state=data.get("state") or {},
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )


class CheckpointStore:
    """Durable checkpoint storage on top of the persistence collaborator."""

    def __init__(
        self,
        persistence,
        max_age_seconds: float = 6 * 3600.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._persistence = persistence
        self.max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock

    def save(self, checkpoint: Checkpoint) -> Checkpoint:
        checkpoint.updated_at = self._clock()
        self._persistence.save_checkpoint(
            checkpoint.build_id, checkpoint.to_dict(), checkpoint.updated_at.isoformat()
        )
        logger.debug(
            f"[Checkpoint] Build {checkpoint.build_id} saved at stage "
            f"{checkpoint.last_stage.value if checkpoint.last_stage else 'start'}"
        )
        return checkpoint

    def load(self, build_id: str, max_age: Optional[timedelta] = None) -> Optional[Checkpoint]:
        """
        Load a build's checkpoint if it is fresh.

        Args:
            build_id: Build to look up
            max_age: Overrides the store's max age for this call
        """
        data = self._persistence.load_checkpoint(build_id)
        if data is None:
            return None
        checkpoint = Checkpoint.from_dict(data)
        age_limit = max_age if max_age is not None else self.max_age
        if checkpoint.updated_at is None or self._clock() - checkpoint.updated_at > age_limit:
            logger.info(f"[Checkpoint] Discarding stale checkpoint for build {build_id}")
            self.clear(build_id)
            return None
        return checkpoint

    def clear(self, build_id: str) -> None:
        self._persistence.delete_checkpoint(build_id)
