"""Process-wide registry of archive readers."""

import datetime
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from pmtiles_proxy.cache import SharedBlockCache
from pmtiles_proxy.reader import ArchiveReader, PMTilesArchiveReader
from pmtiles_proxy.source import ArchiveSource, SourceFactory

logger = logging.getLogger("pmtiles_proxy")

ReaderFactory = Callable[[ArchiveSource, SharedBlockCache], ArchiveReader]


class ArchiveReaderRegistry:
    """
    Memoizes one reader per archive name for the life of the process.

    Constructed once at startup and handed to the request handlers. The first
    resolution of a name builds a source and a reader sharing the block cache;
    every later resolution returns that same reader. Readers are never evicted
    here; the block cache bounds memory.

    Attributes:
        cache: Block cache shared by every reader.
        archive_status: Per-archive bookkeeping (creation time).
    """

    def __init__(
        self,
        source_factory: SourceFactory,
        cache: Optional[SharedBlockCache] = None,
        reader_factory: ReaderFactory = PMTilesArchiveReader,
    ) -> None:
        self.cache = cache if cache is not None else SharedBlockCache()
        self.archive_status: Dict[str, Dict[str, Any]] = {}
        self._source_factory = source_factory
        self._reader_factory = reader_factory
        self._readers: Dict[str, ArchiveReader] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._readers)

    def __contains__(self, archive_name: object) -> bool:
        return archive_name in self._readers

    @property
    def archive_names(self) -> List[str]:
        return sorted(self._readers)

    def resolve(self, archive_name: str) -> ArchiveReader:
        """
        Return the reader for an archive, creating it on first use.

        Args:
            archive_name: Archive name from the request path.

        Returns:
            The archive's reader.
        """
        reader = self._readers.get(archive_name)
        if reader is not None:
            return reader

        with self._lock:
            reader = self._readers.get(archive_name)
            if reader is None:
                source = self._source_factory(archive_name)
                reader = self._reader_factory(source, self.cache)
                self._readers[archive_name] = reader
                self.archive_status[archive_name] = {
                    "created_at": datetime.datetime.now().isoformat(),
                }
                logger.info("Created reader for archive '%s'", archive_name)
        return reader
