"""Computes the byte size of a local file or directory tree."""
import logging
import os
import stat
from typing import Collection

logger = logging.getLogger(__name__)


def estimate_size(path: str, exclude: Collection[str] = ()) -> int:
    """Returns the total size in bytes of a file or directory tree.

    For a file this is its size. For a directory it is the recursive sum of
    every contained file. Symlinked files count as their target's size,
    symlinked directories are not followed and special files count as zero.

    This function never raises: anything that cannot be read is logged and
    contributes zero bytes for the affected subtree.

    Args:
        path: The local path to measure.
        exclude: Entry names (e.g. ``.git``) skipped wherever they appear.

    Returns:
        The size in bytes.
    """
    try:
        st = os.stat(path)
    except OSError as e:
        logger.warning(f"Cannot read size of '{path}', counting it as 0 bytes: {e}")
        return 0
    if stat.S_ISREG(st.st_mode):
        return st.st_size
    if stat.S_ISDIR(st.st_mode):
        return _directory_size(path, frozenset(exclude))
    return 0


def _directory_size(directory: str, exclude: frozenset) -> int:
    total = 0
    try:
        entries = list(os.scandir(directory))
    except OSError as e:
        logger.warning(f"Cannot list directory '{directory}', counting it as 0 bytes: {e}")
        return 0
    for entry in entries:
        if entry.name in exclude:
            continue
        try:
            if entry.is_dir(follow_symlinks=False):
                total += _directory_size(entry.path, exclude)
                continue
            entry_stat = entry.stat()
        except OSError as e:
            logger.warning(f"Cannot read size of '{entry.path}', counting it as 0 bytes: {e}")
            continue
        if stat.S_ISREG(entry_stat.st_mode):
            total += entry_stat.st_size
    return total
