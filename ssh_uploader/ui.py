import abc
import logging
import threading
from typing import Optional

from rich.console import Console
from rich.progress import (BarColumn, DownloadColumn, Progress, TaskID, TextColumn, TimeRemainingColumn,
                           TransferSpeedColumn)

from .models import ProgressEvent, UnitErrorEvent


class BaseUIManager(abc.ABC):
    """Defines the interface for all UI manager implementations.

    The upload pipeline only ever talks to the UI through `on_progress` and
    `on_unit_error`, which makes the two methods usable directly as pipeline
    callbacks. Either may be called from a worker thread.
    """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    @abc.abstractmethod
    def start(self, description: str) -> None:
        pass

    @abc.abstractmethod
    def on_progress(self, event: ProgressEvent) -> None:
        pass

    @abc.abstractmethod
    def on_unit_error(self, event: UnitErrorEvent) -> None:
        pass

    @abc.abstractmethod
    def finish(self, success: bool, message: str) -> None:
        pass

    def stop(self) -> None:
        """Releases any display resources. Safe to call more than once."""
        pass


class UIManager(BaseUIManager):
    """A rich progress bar with byte counts, speed and ETA, drawn on stderr."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)
        self._progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=None),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=self.console,
            transient=False,
        )
        self._task: Optional[TaskID] = None
        self._started = False

    def start(self, description: str) -> None:
        self._task = self._progress.add_task(description, total=None)
        self._progress.start()
        self._started = True

    def on_progress(self, event: ProgressEvent) -> None:
        if self._task is None:
            return
        if event.total:
            self._progress.update(self._task, completed=event.uploaded, total=event.total)
        else:
            self._progress.update(self._task, completed=event.percentage, total=100)

    def on_unit_error(self, event: UnitErrorEvent) -> None:
        self.console.print(f"[bold red]✗ {event.unit}:[/] {event.message}")

    def finish(self, success: bool, message: str) -> None:
        self.stop()
        if success:
            self.console.print(f"[bold green]SUCCESS:[/] {message}")
        else:
            self.console.print(f"[bold red]FAILURE:[/] {message}")

    def stop(self) -> None:
        if self._started:
            self._progress.stop()
            self._started = False


class SimpleUIManager(BaseUIManager):
    """A non-interactive UI that logs progress via `logging`.

    Suitable for `screen`, `tmux` or redirected output. Progress is logged
    each time it crosses another `step` percent.
    """

    def __init__(self, step: int = 10):
        self.step = max(1, step)
        self._next_mark = 0
        self._lock = threading.Lock()
        logging.info("Using simple UI (standard logging).")

    def start(self, description: str) -> None:
        logging.info(f"{description}...")
        self._next_mark = 0

    def on_progress(self, event: ProgressEvent) -> None:
        with self._lock:
            if event.percentage < self._next_mark:
                return
            self._next_mark = (event.percentage // self.step + 1) * self.step
        logging.info(f"Progress: {event.percentage}% ({event.uploaded}/{event.total} bytes)")

    def on_unit_error(self, event: UnitErrorEvent) -> None:
        logging.error(f"Failed: {event.unit}: {event.message}")

    def finish(self, success: bool, message: str) -> None:
        if success:
            logging.info(f"SUCCESS: {message}")
        else:
            logging.error(f"FAILURE: {message}")
