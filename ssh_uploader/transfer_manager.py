import logging
import os
import typing

from .ssh_manager import ConnectionSession
from .transfer_strategies import (CHUNK_SIZE, DEFAULT_EXCLUDED_DIRS, MAX_CONCURRENT_UPLOADS,
                                  BytesCallback, ChunkedStreamStrategy, DirectoryTreeStrategy,
                                  FileDoneCallback, TransferStrategy, WholeFilePutStrategy)
from .utils import TransferError

if typing.TYPE_CHECKING:
    from .config_manager import UploadSettings

logger = logging.getLogger(__name__)


class Transferor:
    """Moves files and directory trees over one connected session.

    Args:
        session: The connected session every transfer goes through.
        settings: Optional settings supplying chunk size, concurrency and
            excluded directory names.
    """

    def __init__(self, session: ConnectionSession, settings: typing.Optional["UploadSettings"] = None):
        self.session = session
        chunk_size = settings.chunk_size if settings else CHUNK_SIZE
        max_workers = settings.max_concurrent_uploads if settings else MAX_CONCURRENT_UPLOADS
        max_workers = min(max_workers, MAX_CONCURRENT_UPLOADS)
        exclude = settings.exclude_dirs if settings else DEFAULT_EXCLUDED_DIRS
        self.primary: TransferStrategy = WholeFilePutStrategy()
        self.fallback: TransferStrategy = ChunkedStreamStrategy(chunk_size=chunk_size)
        self.tree = DirectoryTreeStrategy(max_workers=max_workers, exclude=exclude)

    def upload_file(self, local_path: str, remote_path: str,
                    on_progress: typing.Optional[BytesCallback] = None) -> int:
        """Uploads one file with the primary strategy only.

        Raises:
            TransferError: If the upload fails.
        """
        logger.info(f"Uploading '{local_path}' -> '{remote_path}'")
        return self.primary.transfer(self.session, local_path, remote_path, on_progress)

    def upload_with_fallback(self, local_path: str, remote_path: str,
                             on_progress: typing.Optional[BytesCallback] = None) -> int:
        """Uploads one file, retrying once with the chunked stream if the primary put fails.

        Raises:
            TransferFallbackError: If the fallback fails as well.
        """
        name = os.path.basename(local_path)
        try:
            return self.upload_file(local_path, remote_path, on_progress)
        except TransferError as e:
            logger.warning(f"Primary upload of '{name}' failed ({e}). Falling back to chunked streaming.")
        return self.fallback.transfer(self.session, local_path, remote_path, on_progress)

    def upload_directory(self, local_dir: str, remote_dir: str,
                         on_file_done: typing.Optional[FileDoneCallback] = None) -> str:
        """Uploads a directory tree and returns the remote directory created for it."""
        return self.tree.transfer(self.session, local_dir, remote_dir, on_file_done)
