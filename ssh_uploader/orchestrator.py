"""Top-level upload workflows.

`UploadOrchestrator` runs one request from start to finish over a single
`ConnectionSession`:

- `upload_path`: one file or directory tree. The first fatal error propagates.
- `upload_batch_archived`: several directories, each packaged into a zip
  archive and uploaded strictly one after another. A failing directory is
  recorded and skipped; only a connection failure or a failure to create the
  shared remote directory aborts the whole batch.

The module-level facades (`estimate_and_upload`, `upload_batch_archived`,
`check_local_path_exists`) are the external interface: they never raise for
pipeline errors and return result objects instead.
"""
import logging
import os
import posixpath
import shutil
import tempfile
import typing
from functools import partial
from pathlib import Path

from .archiver import Archiver
from .config_manager import UploadSettings
from .models import (ArchiveJob, BatchResult, ConnectionCredentials, TransferUnit, UnitErrorEvent, UnitKind,
                     UnitStage, UploadRequest, UploadResult)
from .progress import ProgressAggregator, ProgressCallback
from .size_estimator import estimate_size
from .ssh_manager import ConnectionSession
from .transfer_manager import Transferor
from .transfer_strategies import MAX_CONCURRENT_UPLOADS
from .utils import LocalPathNotFoundError, RemoteConnectionError, RemoteDirectoryError, UploadError
from .verifier import Verifier

logger = logging.getLogger(__name__)

UnitErrorCallback = typing.Callable[[UnitErrorEvent], None]
SessionFactory = typing.Callable[[], ConnectionSession]


class UploadOrchestrator:
    """Runs upload requests. One instance may serve several requests in turn.

    Args:
        settings: Pipeline tunables. Defaults are used when omitted.
        session_factory: Builds a fresh, unconnected session for each request.
        archiver: The archiver used in batch mode.
    """

    def __init__(self, settings: typing.Optional[UploadSettings] = None,
                 session_factory: typing.Optional[SessionFactory] = None,
                 archiver: typing.Optional[Archiver] = None):
        self.settings = settings or UploadSettings()
        self.session_factory = session_factory or self._default_session
        self.archiver = archiver or Archiver(self.settings.compression_level)

    def _default_session(self) -> ConnectionSession:
        return ConnectionSession(
            connect_timeout=self.settings.connect_timeout,
            keepalive_interval=self.settings.keepalive_interval,
            connect_retries=self.settings.connect_retries,
            retry_delay=self.settings.retry_delay,
            max_channels=min(self.settings.max_concurrent_uploads, MAX_CONCURRENT_UPLOADS),
        )

    def _open_session(self, credentials: ConnectionCredentials, remote_dir: str) -> ConnectionSession:
        session = self.session_factory()
        try:
            session.connect(credentials)
            session.ensure_remote_directory(remote_dir)
        except BaseException:
            session.dispose()
            raise
        return session

    def upload_path(self, request: UploadRequest,
                    on_progress: typing.Optional[ProgressCallback] = None) -> UploadResult:
        """Uploads a single file or directory tree.

        Raises:
            LocalPathNotFoundError: If the source does not exist.
            UploadError: The first fatal error of any later stage.
        """
        local_path = request.sources[0]
        remote_dir = request.remote_dir
        if not os.path.exists(local_path):
            raise LocalPathNotFoundError(f"Local path does not exist: {local_path}")

        is_dir = os.path.isdir(local_path)
        unit = TransferUnit(
            name=os.path.basename(os.path.normpath(local_path)),
            source_path=local_path,
            kind=UnitKind.DIRECTORY if is_dir else UnitKind.FILE,
        )
        unit.enter(UnitStage.SIZING)
        unit.size = estimate_size(local_path, exclude=self.settings.exclude_dirs if is_dir else ())
        logger.info(f"Total upload size for '{unit.name}': {unit.size} bytes")
        aggregator = ProgressAggregator(unit.size, on_progress)

        unit.enter(UnitStage.CONNECTING)
        try:
            session = self._open_session(request.credentials, remote_dir)
        except UploadError as e:
            unit.mark_failed(str(e))
            raise
        try:
            transferor = Transferor(session, self.settings)
            unit.enter(UnitStage.TRANSFERRING)
            if is_dir:
                unit.remote_path = transferor.upload_directory(
                    local_path, remote_dir, on_file_done=lambda _path, size: aggregator.advance(size))
            else:
                unit.remote_path = posixpath.join(remote_dir, unit.name)
                transferor.upload_file(local_path, unit.remote_path,
                                     on_progress=partial(aggregator.report_partial, limit=unit.size))
                unit.enter(UnitStage.VERIFYING)
                Verifier(session).verify(local_path, unit.remote_path)
                aggregator.advance(unit.size)
            unit.enter(UnitStage.CLEANUP)
            aggregator.complete()
            unit.mark_verified()
        except UploadError as e:
            unit.mark_failed(str(e))
            raise
        finally:
            session.dispose()

        return UploadResult(True, f"Upload succeeded: {local_path} -> {unit.remote_path}")

    def upload_batch_archived(self, request: UploadRequest,
                              on_progress: typing.Optional[ProgressCallback] = None,
                              on_unit_error: typing.Optional[UnitErrorCallback] = None) -> BatchResult:
        """Packages each source directory into a zip archive and uploads it.

        Units run strictly one after another over one shared session.

        Raises:
            RemoteConnectionError: If the connection cannot be established.
            RemoteDirectoryError: If the shared remote directory cannot be created.
        """
        remote_dir = request.remote_dir
        units = [
            TransferUnit(name=os.path.basename(os.path.normpath(source)), source_path=source, kind=UnitKind.ARCHIVE)
            for source in request.sources
        ]
        for unit in units:
            unit.enter(UnitStage.SIZING)
            unit.size = estimate_size(unit.source_path)
        total = sum(unit.size for unit in units)
        logger.info(f"STATE: Batch of {len(units)} directories, {total} bytes before compression")
        aggregator = ProgressAggregator(total, on_progress)
        result = BatchResult(total_units=len(units))

        work_dir = tempfile.mkdtemp(prefix='ssh_uploader_', dir=self.settings.temp_dir)
        session: typing.Optional[ConnectionSession] = None
        try:
            session = self._open_session(request.credentials, remote_dir)
            transferor = Transferor(session, self.settings)
            verifier = Verifier(session)
            for unit in units:
                try:
                    self._process_archive_unit(unit, remote_dir, work_dir, transferor, verifier, aggregator)
                except Exception as e:
                    # Only this unit fails; the batch carries on.
                    unit.mark_failed(str(e))
                    logger.error(f"Upload of '{unit.name}' failed: {e}", exc_info=not isinstance(e, UploadError))
                    event = UnitErrorEvent(unit=unit.name, message=str(e))
                    result.failures.append(event)
                    if on_unit_error:
                        try:
                            on_unit_error(event)
                        except Exception as callback_error:
                            logger.warning(f"Unit error callback raised an error: {callback_error}")
                    continue
                result.successful_units.append(unit.name)
            aggregator.complete()
        finally:
            if session is not None:
                session.dispose()
            shutil.rmtree(work_dir, ignore_errors=True)

        logger.info(f"STATE: Batch finished. {result.message}")
        return result

    def _process_archive_unit(self, unit: TransferUnit, remote_dir: str, work_dir: str,
                              transferor: Transferor, verifier: Verifier,
                              aggregator: ProgressAggregator) -> None:
        if not os.path.exists(unit.source_path):
            raise LocalPathNotFoundError(f"Local directory does not exist: {unit.source_path}")

        job = ArchiveJob(
            source_dir=unit.source_path,
            archive_path=Path(work_dir) / f"{unit.name}.zip",
            compression_level=self.settings.compression_level,
        )
        report_partial = partial(aggregator.report_partial, limit=unit.size)
        try:
            unit.enter(UnitStage.COMPRESSING)
            self.archiver.create_archive(job, on_progress=report_partial)

            unit.enter(UnitStage.TRANSFERRING)
            unit.remote_path = posixpath.join(remote_dir, f"{unit.name}.zip")
            transferor.upload_with_fallback(str(job.archive_path), unit.remote_path,
                                            on_progress=report_partial)

            unit.enter(UnitStage.VERIFYING)
            verifier.verify(str(job.archive_path), unit.remote_path, expected_size=job.size)
        except BaseException:
            job.cleanup()
            raise
        unit.enter(UnitStage.CLEANUP)
        job.cleanup()
        aggregator.advance(unit.size)
        unit.mark_verified()


def check_local_path_exists(path: str) -> bool:
    """Returns whether `path` exists locally."""
    return bool(path) and os.path.exists(path)


def estimate_and_upload(local_path: str, remote_dir: str, credentials: ConnectionCredentials,
                        on_progress: typing.Optional[ProgressCallback] = None,
                        settings: typing.Optional[UploadSettings] = None) -> UploadResult:
    """Uploads one file or directory and reports the outcome as an `UploadResult`.

    Args:
        local_path: The local file or directory.
        remote_dir: The remote destination directory. Created if missing.
        credentials: SSH password credentials.
        on_progress: Receives a `ProgressEvent` as bytes are sent.
        settings: Optional pipeline settings.

    Returns:
        `UploadResult(success=True, ...)` on success, otherwise
        `UploadResult(success=False, message=<reason>)`.
    """
    try:
        request = UploadRequest(sources=[local_path], remote_dir=remote_dir, credentials=credentials)
        return UploadOrchestrator(settings).upload_path(request, on_progress)
    except (UploadError, ValueError) as e:
        logger.error(f"Upload failed: {e}")
        return UploadResult(False, str(e))


def upload_batch_archived(local_dirs: typing.Sequence[str], remote_dir: str, credentials: ConnectionCredentials,
                          on_progress: typing.Optional[ProgressCallback] = None,
                          on_unit_error: typing.Optional[UnitErrorCallback] = None,
                          settings: typing.Optional[UploadSettings] = None) -> BatchResult:
    """Packages and uploads several directories and reports the outcome as a `BatchResult`.

    Returns:
        The batch result. When the batch could not start (bad request,
        connection or remote directory failure) `aborted` holds the reason.
    """
    try:
        request = UploadRequest(sources=list(local_dirs), remote_dir=remote_dir, credentials=credentials)
    except ValueError as e:
        return BatchResult(total_units=len(local_dirs), aborted=str(e))
    try:
        return UploadOrchestrator(settings).upload_batch_archived(request, on_progress, on_unit_error)
    except (RemoteConnectionError, RemoteDirectoryError) as e:
        logger.error(f"Batch upload aborted: {e}")
        return BatchResult(total_units=len(request.sources), aborted=str(e))
