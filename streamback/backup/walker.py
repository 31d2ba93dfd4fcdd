"""
Recursive directory walker feeding the archive builder.

Entries are archived depth-first in the order the source lists them. Each
file is relayed completely before the next entry is touched, so exactly one
source stream is open at any time no matter how large the tree is.
"""

import logging
from typing import Iterable, Optional

from .sources import ENTRY_DIRECTORY, ENTRY_FILE, ListError


logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_FOLDERS = frozenset({'logs', 'cache', 'crash-reports'})


def archive_join(archive_path: str, name: str) -> str:
    """Join archive path segments without ever producing a leading '/'."""
    return f"{archive_path}/{name}" if archive_path else name


class DirectoryWalker:
    """
    Walks a source tree and appends every retained entry to a builder.

    Directories whose name is in ``excluded_folders`` are skipped along
    with their whole subtree: no marker, no listing, no reads.
    """

    def __init__(self, run_state=None, excluded_folders: Optional[Iterable[str]] = None):
        self.run_state = run_state
        if excluded_folders is None:
            excluded_folders = DEFAULT_EXCLUDED_FOLDERS
        self.excluded_folders = frozenset(excluded_folders)

    def walk(self, source, builder, remote_path: str, archive_path: str = ''):
        """
        Archive everything below ``remote_path`` under ``archive_path``.

        A directory that cannot be listed is logged and skipped. Any other
        failure (read, builder, broken upload pipe) propagates and ends the run.
        """
        try:
            entries = source.list(remote_path)
        except ListError as e:
            logger.warning("Failed to process %s: %s", remote_path, e)
            return

        for entry in entries:
            entry_archive_path = archive_join(archive_path, entry.name)

            if entry.is_dir:
                if entry.name in self.excluded_folders:
                    logger.info("Skipping junk folder: %s", entry.path)
                    continue
                builder.append(entry_archive_path + '/', ENTRY_DIRECTORY)
                self.walk(source, builder, entry.path, entry_archive_path)
            else:
                self._copy_file(source, builder, entry, entry_archive_path)

    def _copy_file(self, source, builder, entry, archive_name: str):
        if self.run_state is not None:
            self.run_state.record_file(entry.path)

        stream = source.open_read(entry.path)
        try:
            builder.append(archive_name, ENTRY_FILE, stream, size=entry.size)
        finally:
            stream.close()

        logger.debug("Archived %s", archive_name)
