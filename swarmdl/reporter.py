"""Progress and status reporting for torrent sessions."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import TYPE_CHECKING, Any, Callable

from swarmdl.logging_config import get_logger
from swarmdl.models import TorrentSnapshot

if TYPE_CHECKING:
    from swarmdl.session import AsyncTorrentSession


class ProgressReporter:
    """Builds snapshots of one session, on demand or on a timer."""

    def __init__(self, session: AsyncTorrentSession):
        self.session = session
        self._task: asyncio.Task | None = None
        self.logger = get_logger(__name__)

    def snapshot(self) -> TorrentSnapshot:
        """Recompute the snapshot from the piece manager."""
        session = self.session
        info = session.torrent_info
        return TorrentSnapshot(
            id=session.session_id,
            torrent_name=info.name,
            file_names=info.file_names,
            progress=min(1.0, session.piece_manager.progress()),
            is_multi_file=info.is_multi_file,
            total_length=info.total_length,
            status=session.status,
        )

    async def start(
        self,
        interval: float,
        callback: Callable[[TorrentSnapshot], Any],
    ) -> None:
        """Push a snapshot to ``callback`` every ``interval`` seconds.

        The callback may be a plain function or a coroutine function.
        """
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._tick(interval, callback))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _tick(self, interval: float, callback: Callable[[TorrentSnapshot], Any]) -> None:
        while True:
            try:
                result = callback(self.snapshot())
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception("Progress callback failed")
            await asyncio.sleep(interval)
