"""
Hot reload for the lock config.

A watchdog observer watches the directory holding the lock config. Change
events for the config file are debounced (editors and atomic renames emit
bursts of events) and then trigger one LockRegistry.reload(). Reload
results are delivered to registered callbacks.

Usage:
    watcher = ConfigWatcher(registry, debounce_seconds=0.3)
    watcher.add_reload_callback(lambda result: print(result.message))
    watcher.start()
    ...
    watcher.stop()
"""

import threading
from pathlib import Path
from typing import Callable

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from gatekeep.locks.registry import LockRegistry, ReloadResult

logger = structlog.get_logger()

ReloadCallback = Callable[[ReloadResult], None]


class _ConfigFileHandler(FileSystemEventHandler):
    """Forward events for one file to the watcher."""

    def __init__(self, watcher: "ConfigWatcher", config_path: Path) -> None:
        self.watcher = watcher
        self.config_path = config_path

    def _is_config(self, path: str | bytes | None) -> bool:
        if not path:
            return False
        if isinstance(path, bytes):
            path = path.decode()
        return Path(path).resolve() == self.config_path

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle file modification event."""
        if not event.is_directory and self._is_config(event.src_path):
            self.watcher.schedule_reload()

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle file creation event."""
        if not event.is_directory and self._is_config(event.src_path):
            self.watcher.schedule_reload()

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle rename onto the config file (atomic writes)."""
        if not event.is_directory and self._is_config(getattr(event, "dest_path", None)):
            self.watcher.schedule_reload()


class ConfigWatcher:
    """
    Debounced file watcher that reloads a LockRegistry.

    Attributes:
        registry: Registry reloaded on change
        debounce_seconds: Quiet period required before reloading
        reload_count: Number of reloads performed
    """

    def __init__(self, registry: LockRegistry, debounce_seconds: float = 0.3) -> None:
        """
        Initialize the watcher (not started).

        Args:
            registry: The registry to reload
            debounce_seconds: Window that coalesces bursts of change events
        """
        self.registry = registry
        self.debounce_seconds = debounce_seconds
        self.reload_count = 0
        self._observer: BaseObserver | None = None
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()
        self._callbacks: list[ReloadCallback] = []

    @property
    def running(self) -> bool:
        """Whether the observer is running."""
        return self._observer is not None

    def start(self) -> None:
        """Start watching the registry's config file."""
        config_path = self.registry.config_path.resolve()
        if self._observer:
            self.stop()

        config_path.parent.mkdir(parents=True, exist_ok=True)
        handler = _ConfigFileHandler(self, config_path)
        self._observer = Observer()
        self._observer.schedule(handler, str(config_path.parent), recursive=False)
        self._observer.start()
        logger.info("lock_config_watch_started", path=str(config_path))

    def stop(self) -> None:
        """Stop watching and cancel any pending reload."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("lock_config_watch_stopped", path=str(self.registry.config_path))

    def add_reload_callback(self, callback: ReloadCallback) -> None:
        """
        Add callback to be called after each reload.

        Callbacks run on the timer thread; they should be quick and must
        tolerate being called more than once for the same change.
        """
        self._callbacks.append(callback)

    def schedule_reload(self) -> None:
        """Start (or restart) the debounce window; reload when it elapses."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._reload)
            self._timer.daemon = True
            self._timer.start()

    def _reload(self) -> None:
        with self._lock:
            # A newer timer may already be pending; leave it cancellable
            if self._timer is threading.current_thread():
                self._timer = None

        result = self.registry.reload()
        self.reload_count += 1
        for callback in self._callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.error("reload_callback_failed", error=str(e), exc_info=True)

    def __enter__(self) -> "ConfigWatcher":
        """Start watching on context entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Stop watching on context exit."""
        self.stop()
