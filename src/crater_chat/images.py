"""Per-image hidden/deleted state machine and backing-file removal.

Each generated image moves Visible -> Hidden (reversible) and from either
to Deleted, which is terminal. Deleting flips ``imageStates.deleted[i]``
right away and queues the image file for removal. Files queued close
together are removed in one batch, off the event loop. The deleted flag is
authoritative: a failed file removal is reported, never rolled back.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable

from .core import ImageData, ImageStates, Session
from .writer import DebouncedWriter

logger = logging.getLogger(__name__)

DEFAULT_BATCH_WINDOW = 0.05


@dataclass
class DeletionReport:
    """Aggregated outcome of a batch of file removals."""

    requested: int = 0
    removed: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)  # (path, error)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def summary(self) -> str:
        text = f"Deleted {self.removed} of {self.requested} files"
        if self.failures:
            text += f" ({self.failed} failed)"
        return text

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "removed": self.removed,
            "failed": self.failed,
            "failures": [{"path": p, "error": e} for p, e in self.failures],
        }


class ImageLifecycleController:
    """Applies image-state updates and removes files of deleted images."""

    def __init__(
        self,
        writer: DebouncedWriter,
        batch_window: float = DEFAULT_BATCH_WINDOW,
        remove_file: Callable[[str], None] | None = None,
    ):
        self._writer = writer
        self.batch_window = batch_window
        self._remove_file = remove_file or remove_image_file
        self._last_applied: dict[tuple[str, int], ImageStates] = {}
        self._pending_paths: list[str] = []
        self._claimed: set[str] = set()  # queued or being removed
        self._batch: asyncio.Task | None = None

    def apply_states(self, session: Session, message_index: int, states: ImageStates) -> bool:
        """Apply an incoming state update for one image message.

        Returns False when the update is identical to the last one applied
        (or changes nothing), in which case no write is scheduled.
        """
        image_data = image_data_at(session, message_index)
        count = len(image_data.saved_file_paths)
        if len(states.deleted) != count or len(states.hidden) != count:
            raise ValueError(
                f"Expected {count} image states for message {message_index}, "
                f"got {len(states.deleted)} deleted / {len(states.hidden)} hidden"
            )

        current = image_data.image_states or ImageStates.for_count(count)
        key = (session.id, message_index)
        if states == self._last_applied.get(key, current):
            logger.debug("Skipping duplicate image states for %s[%d]", session.id, message_index)
            return False

        merged, newly_deleted = _merge_states(current, states)
        self._last_applied[key] = merged.copy()
        if merged == current:
            return False

        image_data.image_states = merged
        if newly_deleted:
            self.queue_deletions([image_data.saved_file_paths[i] for i in newly_deleted])
        self._writer.schedule_write(session.id)
        return True

    def toggle_hidden(self, session: Session, message_index: int, image_index: int) -> bool:
        states = self._states_for_edit(session, message_index, image_index)
        if states.deleted[image_index]:
            return False
        states.hidden[image_index] = not states.hidden[image_index]
        return self.apply_states(session, message_index, states)

    def delete_image(self, session: Session, message_index: int, image_index: int) -> bool:
        """Mark one image deleted. Callers confirm with the user first."""
        states = self._states_for_edit(session, message_index, image_index)
        if states.deleted[image_index]:
            return False
        states.deleted[image_index] = True
        return self.apply_states(session, message_index, states)

    def forget_session(self, session_id: str) -> None:
        """Drop duplicate-suppression state kept for a session."""
        for key in [k for k in self._last_applied if k[0] == session_id]:
            del self._last_applied[key]

    # ── File removal ─────────────────────────────────────────────────

    def queue_deletions(self, paths: list[str]) -> int:
        """Queue files for removal; returns how many were newly queued."""
        queued = 0
        for path in paths:
            if not path or path in self._claimed:
                continue
            self._claimed.add(path)
            self._pending_paths.append(path)
            queued += 1

        if queued and (self._batch is None or self._batch.done()):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                # No loop yet: drain_deletions() starts the batch
                return queued
            self._batch = loop.create_task(self._run_batch())
        return queued

    @property
    def deletions_pending(self) -> bool:
        return bool(self._pending_paths) or (self._batch is not None and not self._batch.done())

    async def drain_deletions(self) -> DeletionReport:
        """Wait for the current (or most recent) removal batch and return its report."""
        if self._pending_paths and (self._batch is None or self._batch.done()):
            self._batch = asyncio.get_running_loop().create_task(self._run_batch())
        if self._batch is None:
            return DeletionReport()
        return await self._batch

    async def _run_batch(self) -> DeletionReport:
        report = DeletionReport()
        if self.batch_window:
            await asyncio.sleep(self.batch_window)

        while self._pending_paths:
            paths, self._pending_paths = self._pending_paths, []
            report.requested += len(paths)
            results = await asyncio.gather(
                *(asyncio.to_thread(self._remove_file, p) for p in paths),
                return_exceptions=True,
            )
            for path, result in zip(paths, results):
                if isinstance(result, Exception):
                    logger.warning("Failed to delete image file %s: %s", path, result)
                    report.failures.append((path, str(result)))
                else:
                    report.removed += 1
            # Deleted is terminal, so a finished path is never queued again
            self._claimed.difference_update(paths)

        logger.info(report.summary())
        return report

    def _states_for_edit(self, session: Session, message_index: int, image_index: int) -> ImageStates:
        image_data = image_data_at(session, message_index)
        count = len(image_data.saved_file_paths)
        if not 0 <= image_index < count:
            raise IndexError(f"Image index {image_index} out of range for message {message_index}")
        if image_data.image_states is None:
            return ImageStates.for_count(count)
        return image_data.image_states.copy()


def image_data_at(session: Session, message_index: int) -> ImageData:
    """Return the image data of a message, validating the index."""
    if not 0 <= message_index < len(session.messages):
        raise IndexError(f"Message index {message_index} out of range")
    image_data = session.messages[message_index].image_data
    if image_data is None:
        raise ValueError(f"Message {message_index} has no images")
    return image_data


def remove_image_file(path: str) -> None:
    """Remove a file; a file that is already gone counts as removed."""
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.debug("Image file already absent: %s", path)


def _merge_states(current: ImageStates, incoming: ImageStates) -> tuple[ImageStates, list[int]]:
    deleted = []
    hidden = []
    newly_deleted = []
    for i, (was_deleted, was_hidden) in enumerate(zip(current.deleted, current.hidden)):
        if was_deleted:
            # Terminal: ignore attempts to restore or re-hide
            deleted.append(True)
            hidden.append(was_hidden)
            continue
        if incoming.deleted[i]:
            newly_deleted.append(i)
        deleted.append(bool(incoming.deleted[i]))
        hidden.append(bool(incoming.hidden[i]))
    return ImageStates(deleted=deleted, hidden=hidden), newly_deleted
