"""
Folder watcher for automatic content ingestion.

Keeps one watch handle per watched folder. New or modified files with an
allowed extension are enqueued as ``file`` ingestion jobs once their size and
mtime have been stable for the quiescence window. Removals are only logged.

Usage:
    watcher = FileWatcher(db, orchestrator)
    await watcher.initialize_watchers()
    # ... service runs ...
    await watcher.stop_all()
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger
from sqlalchemy import delete, select
from watchfiles import Change, awatch

from nuggets.db.database import Database
from nuggets.db.models import WatchedFolder
from nuggets.exceptions import NotFoundError
from nuggets.jobs.orchestrator import JobOrchestrator
from nuggets.jobs.payloads import IngestionPayload, IngestionSourceMetadata, JobKind

# (path, recursive, stop_event) -> stream of change batches
WatchSource = Callable[[str, bool, asyncio.Event], AsyncIterator[set[tuple[Change, str]]]]


def watchfiles_source(path: str, recursive: bool, stop_event: asyncio.Event) -> AsyncIterator[set[tuple[Change, str]]]:
    """Filesystem notifications from watchfiles."""
    return awatch(path, recursive=recursive, stop_event=stop_event)


@dataclass(frozen=True)
class FolderConfig:
    """Snapshot of a watched folder's settings."""

    id: str
    organization_id: str
    path: str
    file_types: tuple[str, ...]
    recursive: bool = True
    auto_process: bool = True
    enabled: bool = True

    @classmethod
    def from_model(cls, folder: WatchedFolder) -> FolderConfig:
        return cls(
            id=folder.id,
            organization_id=folder.organization_id,
            path=folder.path,
            file_types=tuple(t.lower().lstrip(".") for t in (folder.file_types or [])),
            recursive=folder.recursive,
            auto_process=folder.auto_process,
            enabled=folder.enabled,
        )

    def allows(self, path: str) -> bool:
        suffix = Path(path).suffix.lower().lstrip(".")
        return bool(suffix) and suffix in self.file_types


@dataclass
class WatchHandle:
    """Running watch for one folder."""

    config: FolderConfig
    task: asyncio.Task
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)


def is_hidden(path: str, root: str) -> bool:
    """True for dotfiles and anything inside a dot-directory below ``root``."""
    try:
        parts = Path(path).resolve().relative_to(Path(root).resolve()).parts
    except ValueError:
        parts = Path(path).parts
    return any(part.startswith(".") for part in parts)


class FileWatcher:
    """Registry of folder watch handles."""

    def __init__(
        self,
        db: Database,
        orchestrator: JobOrchestrator,
        stability_threshold: float = 2.0,
        poll_interval: float = 0.1,
        default_file_types: Iterable[str] = ("pdf", "txt", "md", "html"),
        watch_source: WatchSource | None = None,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.stability_threshold = stability_threshold
        self.poll_interval = poll_interval
        self.default_file_types = list(default_file_types)
        self.watch_source = watch_source or watchfiles_source
        self._handles: dict[str, WatchHandle] = {}
        self._stabilizing: set[str] = set()
        self._stabilizers: dict[str, set[asyncio.Task]] = {}

    @property
    def watched_folder_ids(self) -> list[str]:
        return list(self._handles)

    def is_watching(self, folder_id: str) -> bool:
        return folder_id in self._handles

    # ========================================
    # Registry
    # ========================================

    async def watch_folder(self, folder_id: str, config: FolderConfig | WatchedFolder) -> None:
        """Start (or restart) watching a folder."""
        if isinstance(config, WatchedFolder):
            config = FolderConfig.from_model(config)
        # Pending stabilizations survive a restart
        await self._release_handle(folder_id)

        stop_event = asyncio.Event()
        task = asyncio.create_task(self._run(config, stop_event), name=f"watch-{folder_id}")
        self._handles[folder_id] = WatchHandle(config=config, task=task, stop_event=stop_event)
        logger.info(
            "Started watching folder {} ({}, recursive={}, types={})",
            folder_id,
            config.path,
            config.recursive,
            ",".join(config.file_types),
        )

    async def stop_watching(self, folder_id: str) -> None:
        """
        Release a folder's watch handle and cancel its pending stabilizations.

        Unknown ids are a no-op.
        """
        if await self._release_handle(folder_id):
            await self._cancel_stabilizers(folder_id)
            logger.info("Stopped watching folder {}", folder_id)

    async def stop_all(self) -> None:
        for folder_id in list(self._handles):
            await self.stop_watching(folder_id)
        for folder_id in list(self._stabilizers):
            await self._cancel_stabilizers(folder_id)
        self._stabilizing.clear()

    async def wait_for_pending(self) -> None:
        """Wait until every in-flight stabilization has enqueued or given up."""
        while self._stabilizers:
            pending = [task for tasks in self._stabilizers.values() for task in tasks]
            await asyncio.gather(*pending, return_exceptions=True)

    async def _release_handle(self, folder_id: str) -> bool:
        handle = self._handles.pop(folder_id, None)
        if handle is None:
            return False
        handle.stop_event.set()
        handle.task.cancel()
        await asyncio.gather(handle.task, return_exceptions=True)
        return True

    async def _cancel_stabilizers(self, folder_id: str) -> None:
        tasks = self._stabilizers.pop(folder_id, set())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.debug("Cancelled {} pending file(s) for folder {}", len(tasks), folder_id)

    def _discard_stabilizer(self, folder_id: str, task: asyncio.Task) -> None:
        tasks = self._stabilizers.get(folder_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._stabilizers[folder_id]

    async def initialize_watchers(self) -> int:
        """Start watchers for all enabled folders. Returns the count started."""
        async with self.db.session_scope() as session:
            folders = (await session.execute(select(WatchedFolder).where(WatchedFolder.enabled.is_(True)))).scalars().all()
        for folder in folders:
            await self.watch_folder(folder.id, folder)
        logger.info("Initialized file watchers: {}", len(folders))
        return len(folders)

    async def apply_folder(self, folder: WatchedFolder) -> None:
        """Sync the handle with a folder's configuration after it changed."""
        if folder.enabled:
            await self.watch_folder(folder.id, folder)
        else:
            await self.stop_watching(folder.id)

    async def register_folder(
        self,
        organization_id: str,
        path: str,
        file_types: Iterable[str] | None = None,
        recursive: bool = True,
        auto_process: bool = True,
        enabled: bool = True,
        start: bool = True,
    ) -> WatchedFolder:
        """Persist a new watched folder and, with ``start``, apply it to the registry."""
        async with self.db.session_scope() as session:
            folder = WatchedFolder(
                organization_id=organization_id,
                path=str(Path(path).resolve()),
                file_types=[t.lower().lstrip(".") for t in (file_types or self.default_file_types)],
                recursive=recursive,
                auto_process=auto_process,
                enabled=enabled,
            )
            session.add(folder)
        if start:
            await self.apply_folder(folder)
        return folder

    async def remove_folder(self, folder_id: str) -> None:
        """Release the handle and delete the folder configuration."""
        await self.stop_watching(folder_id)
        async with self.db.session_scope() as session:
            result = await session.execute(delete(WatchedFolder).where(WatchedFolder.id == folder_id))
            if result.rowcount == 0:
                raise NotFoundError("WatchedFolder", folder_id)
        logger.info("Removed watched folder {}", folder_id)

    # ========================================
    # Events
    # ========================================

    async def _run(self, config: FolderConfig, stop_event: asyncio.Event) -> None:
        try:
            async for changes in self.watch_source(config.path, config.recursive, stop_event):
                for change, path in sorted(changes, key=lambda c: c[1]):
                    self.handle_change(config, change, path)
                if stop_event.is_set():
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:  # Intentionally broad - a failing watch must not take down the service
            logger.error("File watcher error for folder {} ({}): {}", config.id, config.path, e)

    def handle_change(self, config: FolderConfig, change: Change, path: str) -> None:
        """Dispatch one filesystem change."""
        if is_hidden(path, config.path):
            return
        if change == Change.deleted:
            logger.info("File removed from watched folder {}: {}", config.id, path)
            return
        if not config.allows(path):
            return
        if not config.auto_process:
            logger.info("File detected but auto-process disabled: {}", path)
            return
        if path in self._stabilizing:
            return

        self._stabilizing.add(path)
        task = asyncio.create_task(self._stabilize_and_enqueue(config, path))
        self._stabilizers.setdefault(config.id, set()).add(task)
        task.add_done_callback(lambda done: self._discard_stabilizer(config.id, done))

    async def _stabilize_and_enqueue(self, config: FolderConfig, path: str) -> None:
        try:
            size = await self.wait_for_stable(path)
            if size is None:
                logger.info("File vanished before it stabilized: {}", path)
                return
            payload = IngestionPayload(
                type="file",
                source=str(Path(path).resolve()),
                organization_id=config.organization_id,
                metadata=IngestionSourceMetadata(folder_id=config.id, file_name=Path(path).name, file_size=size),
            )
            handle = await self.orchestrator.enqueue(JobKind.INGESTION, payload)
            logger.info("Queued file for processing: {} (job {})", path, handle.job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # Intentionally broad - report and keep watching
            logger.error("Failed to queue file {} from folder {}: {}", path, config.id, e)
        finally:
            self._stabilizing.discard(path)

    async def wait_for_stable(self, path: str) -> int | None:
        """
        Wait until size and mtime stop changing for ``stability_threshold`` seconds.

        Returns:
            Final file size, or None if the file disappeared.
        """
        loop = asyncio.get_running_loop()
        try:
            stat = Path(path).stat()
        except FileNotFoundError:
            return None
        previous = (stat.st_size, stat.st_mtime_ns)
        stable_since = loop.time()

        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                stat = Path(path).stat()
            except FileNotFoundError:
                return None
            current = (stat.st_size, stat.st_mtime_ns)
            if current != previous:
                previous = current
                stable_since = loop.time()
            elif loop.time() - stable_since >= self.stability_threshold:
                return stat.st_size
