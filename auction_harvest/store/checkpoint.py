"""Durable per-phase progress checkpoints."""
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os
import orjson
from pydantic import BaseModel, Field, ValidationError, field_serializer

from auction_harvest.config import config
from auction_harvest.errors import PersistenceError
from auction_harvest.models import FailureRecord, utcnow_iso

logger = logging.getLogger(__name__)


class CheckpointState(BaseModel):
    """Everything a phase needs to resume.

    Two resume cursors are supported: ``last_processed_key`` for traversals
    whose order is stable across runs, and ``processed_keys`` for O(1)
    membership tests when it is not. ``completed_units`` is the transfer
    engine's set of destination keys already stored.
    """

    phase: str
    last_processed_key: Optional[str] = None
    processed_keys: set[str] = Field(default_factory=set)
    completed_units: set[str] = Field(default_factory=set)
    counters: dict[str, int] = Field(default_factory=dict)
    failures: list[FailureRecord] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)
    started_at: str = Field(default_factory=utcnow_iso)
    last_updated: Optional[str] = None

    @field_serializer("processed_keys", "completed_units")
    def _sorted(self, value: set[str]) -> list[str]:
        return sorted(value)

    def is_done(self, key: str) -> bool:
        return key in self.processed_keys

    def mark_done(self, key: str) -> None:
        self.processed_keys.add(key)
        self.last_processed_key = key

    def increment(self, counter: str, amount: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def count(self, counter: str) -> int:
        return self.counters.get(counter, 0)

    def record_failure(self, failure: FailureRecord, limit: int = config.MAX_FAILURES) -> None:
        """Append a failure, keeping only the most recent ``limit`` entries."""
        self.failures.append(failure)
        if limit >= 0 and len(self.failures) > limit:
            del self.failures[: len(self.failures) - limit]


class CheckpointStore:
    """JSON checkpoint file written with write-to-temp-then-rename.

    A crash between saves loses at most the work since the last save and never
    leaves a partially written checkpoint behind.
    """

    def __init__(self, path: Path, phase: str, max_failures: int = config.MAX_FAILURES):
        self.path = Path(path)
        self.phase = phase
        self.max_failures = max_failures
        self.save_count = 0

    def fresh(self) -> CheckpointState:
        return CheckpointState(phase=self.phase)

    def load(self) -> CheckpointState:
        """Load the checkpoint, returning a fresh state if there is none."""
        if not self.path.exists():
            return self.fresh()
        try:
            raw = orjson.loads(self.path.read_bytes())
            state = CheckpointState.model_validate(raw)
        except (orjson.JSONDecodeError, ValidationError, OSError) as e:
            corrupt = self.path.with_name(
                f"{self.path.name}.corrupt-{datetime.now(timezone.utc):%Y%m%d%H%M%S}"
            )
            logger.error(f"Unreadable checkpoint {self.path} ({e}); moved to {corrupt.name}, starting fresh")
            try:
                self.path.replace(corrupt)
            except OSError:
                pass
            return self.fresh()
        if state.phase != self.phase:
            logger.warning(f"Checkpoint {self.path} belongs to phase '{state.phase}', expected '{self.phase}'")
        logger.info(
            f"Checkpoint loaded ({self.phase}): {len(state.processed_keys)} processed keys, "
            f"last={state.last_processed_key}"
        )
        return state

    async def save(self, state: CheckpointState) -> None:
        """Atomically persist ``state``. Raises PersistenceError on failure."""
        state.last_updated = utcnow_iso()
        if len(state.failures) > self.max_failures:
            del state.failures[: len(state.failures) - self.max_failures]
        payload = orjson.dumps(state.model_dump(mode="json"), option=orjson.OPT_INDENT_2)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(payload)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Could not save checkpoint {self.path}: {e}") from e
        self.save_count += 1
        logger.debug(f"Checkpoint saved ({self.phase}) to {self.path}")

    def reset(self) -> None:
        """Delete the checkpoint file so the next load starts fresh."""
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Checkpoint reset: {self.path}")


def checkpoint_for(phase: str, directory: Optional[Path] = None, **kwargs: Any) -> CheckpointStore:
    """Checkpoint store at the standard location for ``phase``."""
    directory = directory or config.checkpoint_dir()
    return CheckpointStore(directory / f"{phase}.json", phase, **kwargs)

