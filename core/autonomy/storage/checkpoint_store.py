"""
Checkpoint Store - persists session checkpoints with atomic writes.

Directory structure:
    <base_path>/<session_id>/
        index.json              # Checkpoint manifest
        cp_<session>_<iteration>_<timestamp>.json
"""

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from autonomy.models.checkpoint import CheckpointIndex, CheckpointSummary, ExecutionCheckpoint
from autonomy.utils.io import atomic_write

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    File-backed checkpoint storage.

    Blocking file I/O runs in worker threads; index updates are serialized
    with an asyncio lock so concurrent saves never lose entries.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self._index_lock = asyncio.Lock()

    def session_dir(self, session_id: str) -> Path:
        return self.base_path / session_id

    def _index_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "index.json"

    async def save_checkpoint(self, checkpoint: ExecutionCheckpoint) -> None:
        """
        Atomically save a checkpoint, then add it to the session index.

        Raises:
            OSError: If file write fails
        """
        session_dir = self.session_dir(checkpoint.session_id)

        def _write() -> None:
            session_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(session_dir / f"{checkpoint.checkpoint_id}.json") as f:
                f.write(checkpoint.model_dump_json(indent=2))
            logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

        await asyncio.to_thread(_write)

        async with self._index_lock:
            index = await self.load_index(checkpoint.session_id)
            if index is None:
                index = CheckpointIndex(session_id=checkpoint.session_id)
            index.add(checkpoint)
            await self._write_index(index)

    async def load_checkpoint(
        self,
        session_id: str,
        checkpoint_id: str | None = None,
    ) -> ExecutionCheckpoint | None:
        """Load a checkpoint by ID, or the session's latest when ID is None."""
        if checkpoint_id is None:
            index = await self.load_index(session_id)
            if not index or not index.latest_checkpoint_id:
                logger.warning(f"No checkpoints found for session {session_id}")
                return None
            checkpoint_id = index.latest_checkpoint_id

        path = self.session_dir(session_id) / f"{checkpoint_id}.json"

        def _read() -> ExecutionCheckpoint | None:
            if not path.exists():
                logger.warning(f"Checkpoint file not found: {path}")
                return None
            try:
                return ExecutionCheckpoint.model_validate_json(path.read_text(encoding="utf-8"))
            except (ValidationError, OSError) as e:
                logger.error(f"Failed to load checkpoint {checkpoint_id}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def load_index(self, session_id: str) -> CheckpointIndex | None:
        path = self._index_path(session_id)

        def _read() -> CheckpointIndex | None:
            if not path.exists():
                return None
            try:
                return CheckpointIndex.model_validate_json(path.read_text(encoding="utf-8"))
            except (ValidationError, OSError) as e:
                logger.error(f"Failed to load checkpoint index for {session_id}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def list_checkpoints(
        self,
        session_id: str,
        is_clean: bool | None = None,
    ) -> list[CheckpointSummary]:
        index = await self.load_index(session_id)
        if not index:
            return []
        if is_clean is None:
            return list(index.checkpoints)
        return [cp for cp in index.checkpoints if cp.is_clean == is_clean]

    async def delete_checkpoint(self, session_id: str, checkpoint_id: str) -> bool:
        """Delete a checkpoint file and drop it from the index."""
        path = self.session_dir(session_id) / f"{checkpoint_id}.json"

        def _delete() -> bool:
            if not path.exists():
                logger.warning(f"Checkpoint file not found: {path}")
                return False
            path.unlink()
            logger.info(f"Deleted checkpoint {checkpoint_id}")
            return True

        deleted = await asyncio.to_thread(_delete)
        if deleted:
            async with self._index_lock:
                index = await self.load_index(session_id)
                if index is not None:
                    index.remove(checkpoint_id)
                    await self._write_index(index)
        return deleted

    async def prune_checkpoints(self, session_id: str, keep_last: int = 10) -> int:
        """Delete all but the newest ``keep_last`` checkpoints of a session."""
        index = await self.load_index(session_id)
        if not index or len(index.checkpoints) <= keep_last:
            return 0

        stale = index.checkpoints[: len(index.checkpoints) - keep_last]
        deleted_count = 0
        for summary in stale:
            if await self.delete_checkpoint(session_id, summary.checkpoint_id):
                deleted_count += 1

        if deleted_count:
            logger.info(f"Pruned {deleted_count} checkpoints for session {session_id}")
        return deleted_count

    async def _write_index(self, index: CheckpointIndex) -> None:
        """Must be called with ``_index_lock`` held."""
        session_dir = self.session_dir(index.session_id)

        def _write() -> None:
            session_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(self._index_path(index.session_id)) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
