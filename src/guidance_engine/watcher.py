"""
Catalog file watcher.

Watches a catalog directory (or a manifest's directory) and reloads the
active catalog after changes settle. Reloads build a fresh catalog and swap it
into the CatalogHolder, so requests in flight keep the catalog they started
with. A reload that fails keeps the previous catalog active.
"""

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from guidance_engine.catalog import INSTRUCTION_SUFFIX, CatalogHolder, load_catalog

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 3.0


class CatalogFileEventHandler(FileSystemEventHandler):
    """
    File watcher event handler for catalog sources.

    Implements debouncing to handle batch file changes efficiently: every
    relevant event restarts the timer, and on_change runs once after no
    event arrived for debounce_seconds.
    """

    def __init__(
        self,
        on_change: Callable[[], object],
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        manifest_name: str | None = None,
    ):
        """
        Args:
            on_change: Called once per settled batch of changes
            debounce_seconds: Seconds to wait after the last event
            manifest_name: Manifest file name to watch besides instruction files
        """
        super().__init__()
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self.manifest_name = manifest_name
        self._pending_events: set[str] = set()
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def _is_catalog_file(self, path: str) -> bool:
        name = Path(path).name
        return name.endswith(INSTRUCTION_SUFFIX) or (
            self.manifest_name is not None and name == self.manifest_name
        )

    def _should_process(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(path and self._is_catalog_file(str(path)) for path in paths)

    def _handle_event(self, event: FileSystemEvent):
        if not self._should_process(event):
            return

        logger.info(f"Catalog file {event.event_type}: {Path(str(event.src_path)).name}")

        with self._lock:
            self._pending_events.add(str(event.src_path))
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._trigger_reload)
            self._timer.daemon = True
            self._timer.start()

    def on_modified(self, event: FileSystemEvent):
        self._handle_event(event)

    def on_created(self, event: FileSystemEvent):
        self._handle_event(event)

    def on_deleted(self, event: FileSystemEvent):
        self._handle_event(event)

    def on_moved(self, event: FileSystemEvent):
        self._handle_event(event)

    def _trigger_reload(self):
        with self._lock:
            if not self._pending_events:
                return
            event_count = len(self._pending_events)
            self._pending_events.clear()
            self._timer = None

        logger.info(
            f"Debounce period complete - reloading catalog ({event_count} file(s) changed)"
        )
        self.on_change()

    def cancel(self):
        """Cancel a pending reload."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending_events.clear()


class CatalogWatcher:
    """Reloads a CatalogHolder when its source changes on disk."""

    def __init__(
        self,
        holder: CatalogHolder,
        catalog_path: Path | str,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.holder = holder
        self.catalog_path = Path(catalog_path)
        self.debounce_seconds = debounce_seconds
        self._reload_lock = threading.Lock()
        self._observer: Observer | None = None

        if self.catalog_path.is_dir():
            self.watch_dir = self.catalog_path
            manifest_name = None
        else:
            self.watch_dir = self.catalog_path.parent
            manifest_name = self.catalog_path.name
        self.handler = CatalogFileEventHandler(
            self.reload_now, debounce_seconds=debounce_seconds, manifest_name=manifest_name
        )

    def reload_now(self) -> dict:
        """
        Load the catalog from disk and swap it in.

        Returns:
            Reload summary with success flag; on failure the old catalog stays active
        """
        with self._reload_lock:
            try:
                start_time = time.time()
                catalog = load_catalog(self.catalog_path)
                result = self.holder.reload(catalog)
                result["success"] = True
                result["elapsed_ms"] = (time.time() - start_time) * 1000
                return result
            except Exception as e:
                logger.error(f"Catalog reload failed: {e}", exc_info=True)
                return {
                    "success": False,
                    "error": str(e),
                    "timestamp": datetime.now().isoformat(),
                }

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(self.handler, str(self.watch_dir), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Catalog watcher started: {self.watch_dir}")

    def stop(self) -> None:
        self.handler.cancel()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("Catalog watcher stopped")
