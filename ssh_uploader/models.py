"""Data classes shared by the upload pipeline.

The request side (`ConnectionCredentials`, `UploadRequest`), the per-unit
bookkeeping (`TransferUnit`, `ArchiveJob`) and the values handed back to the
caller (`ProgressEvent`, `UnitErrorEvent`, `UploadResult`, `BatchResult`).
"""
import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22


@dataclass(frozen=True)
class ConnectionCredentials:
    """Password credentials for one request. Never persisted by the core."""
    host: str
    username: str
    password: str = field(repr=False)
    port: int = DEFAULT_SSH_PORT

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass
class UploadRequest:
    """One or many local sources going to a single remote directory."""
    sources: List[str]
    remote_dir: str
    credentials: ConnectionCredentials

    def __post_init__(self) -> None:
        if isinstance(self.sources, (str, os.PathLike)):
            self.sources = [self.sources]
        self.sources = [os.fspath(s) for s in self.sources]
        if not self.sources:
            raise ValueError("An upload request needs at least one source path.")
        if not self.remote_dir or not str(self.remote_dir).strip():
            raise ValueError("The remote destination directory must be a non-empty path.")


class UnitKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"
    ARCHIVE = "archive"


class UnitStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    VERIFIED = "verified"
    FAILED = "failed"


class UnitStage(enum.Enum):
    """The pipeline stage a unit is currently in."""
    SIZING = "sizing"
    COMPRESSING = "compressing"
    CONNECTING = "connecting"
    TRANSFERRING = "transferring"
    VERIFYING = "verifying"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TransferUnit:
    """One file, directory tree or packaged directory moved as an atomic step."""
    name: str
    source_path: str
    kind: UnitKind
    size: int = 0
    remote_path: Optional[str] = None
    status: UnitStatus = UnitStatus.PENDING
    stage: UnitStage = UnitStage.SIZING
    error: Optional[str] = None

    def enter(self, stage: UnitStage) -> None:
        """Moves the unit to `stage` and logs the transition."""
        self.stage = stage
        if stage not in (UnitStage.DONE, UnitStage.FAILED):
            self.status = UnitStatus.IN_PROGRESS
        logger.info(f"STATE: [{self.name}] {stage.value}")

    def mark_verified(self) -> None:
        self.stage = UnitStage.DONE
        self.status = UnitStatus.VERIFIED
        logger.info(f"STATE: [{self.name}] done")

    def mark_failed(self, message: str) -> None:
        self.error = f"[{self.stage.value}] {message}"
        self.stage = UnitStage.FAILED
        self.status = UnitStatus.FAILED
        logger.info(f"STATE: [{self.name}] failed")


@dataclass
class ArchiveJob:
    """A directory being packaged into a temporary archive.

    The archive only lives for the duration of one unit: `cleanup()` is called
    after the unit's transfer attempt whatever its outcome.
    """
    source_dir: str
    archive_path: Path
    compression_level: Optional[int] = None
    size: Optional[int] = None

    def cleanup(self) -> None:
        try:
            self.archive_path.unlink()
            logger.debug(f"Removed temporary archive '{self.archive_path}'")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not remove temporary archive '{self.archive_path}': {e}")


@dataclass(frozen=True)
class ProgressEvent:
    uploaded: int
    total: int
    percentage: int

    def to_dict(self) -> Dict[str, int]:
        return {"uploaded": self.uploaded, "total": self.total, "percentage": self.percentage}


@dataclass(frozen=True)
class UnitErrorEvent:
    unit: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"unit": self.unit, "message": self.message}


@dataclass
class UploadResult:
    """Holds the result of a single-path upload."""
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message}


@dataclass
class BatchResult:
    """Aggregated outcome of a batch upload.

    The batch succeeds when at least one unit completed. `aborted` carries the
    reason when the batch could not start (connection or remote directory).
    """
    total_units: int = 0
    successful_units: List[str] = field(default_factory=list)
    failures: List[UnitErrorEvent] = field(default_factory=list)
    aborted: Optional[str] = None

    @property
    def success(self) -> bool:
        return bool(self.successful_units)

    @property
    def message(self) -> str:
        if self.aborted:
            return self.aborted
        failed = "; ".join(f"{f.unit}: {f.message}" for f in self.failures)
        if not self.successful_units:
            return f"All {self.total_units} directories failed to upload: {failed}"
        message = f"Uploaded {len(self.successful_units)} directories: {', '.join(self.successful_units)}"
        if self.failures:
            message += f". Failed {len(self.failures)}: {failed}"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "successfulUnits": list(self.successful_units),
        }
