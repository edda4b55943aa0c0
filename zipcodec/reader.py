#
# Archive reader
#
# Sequential access walks the local headers in stream order and needs no
# seeking; indexed access reads the central directory first and seeks to the
# entries it is asked for.
#
import enum
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import aiofiles

from .base import ExecutorMixin, InconsistencyError, StructuralError, UsageError
from .cdir import CentralDirectoryReader
from .entry import CentralDirectory, EntryHeader
from .stream import EntryReader, check_local_against_central
from .streams import DEFAULT_CHUNK_SIZE, ByteSource

__all__ = ("AccessMode", "AioZipReader")

__log__ = logging.getLogger(__name__)


class AccessMode(enum.Enum):
    SEQUENTIAL = "sequential"
    INDEXED = "indexed"


class AioZipReader(ExecutorMixin):
    """
    Asynchronous ZIP archive reader

    Args:
        source: Anything ``ByteSource`` accepts: a file-like object (sync or
            async), an async iterable of chunks, or bytes.
        chunksize: Number of bytes read from the source at once.
        allow_trailing_data: Ignore (with a warning) bytes after the end of
            central directory record instead of raising StructuralError.
        mode: Access mode; chosen from the source's seek capability when None.

    Raises:
        UsageError: Indexed mode requested for a source that cannot seek.
    """

    def __init__(self, source: Any, *, chunksize: int = DEFAULT_CHUNK_SIZE,
                 allow_trailing_data: bool = False, mode: Optional[AccessMode] = None) -> None:
        self._source = source if isinstance(source, ByteSource) else ByteSource(source, chunksize)
        if mode is None:
            mode = AccessMode.INDEXED if self._source.seekable else AccessMode.SEQUENTIAL
        elif mode is AccessMode.INDEXED and not self._source.seekable:
            raise UsageError("Indexed access needs a seekable source.")
        self.mode = mode
        self.allow_trailing_data = allow_trailing_data
        self._directory: Optional[CentralDirectory] = None
        self._iterated = False
        self._handle = None

    @classmethod
    async def open(cls, path: str, **kwargs: Any) -> "AioZipReader":
        """Open the archive at ``path`` with aiofiles; the reader closes it."""
        handle = await aiofiles.open(path, "rb")
        try:
            reader = cls(handle, **kwargs)
        except BaseException:
            await handle.close()
            raise
        reader._handle = handle
        return reader

    async def __aenter__(self) -> "AioZipReader":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        self._shutdown_executor()
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await handle.close()

    @property
    def offset(self) -> int:
        """Absolute offset of the next unread byte."""
        return self._source.offset

    async def entries(self) -> AsyncIterator[EntryReader]:
        """
        Yield one EntryReader per archive member.

        In sequential mode entries come in stream order, each positioned after
        its local header; an entry left unread is skipped when the next one is
        requested. Once the last entry is passed, the central directory that
        follows is read and checked against the local headers seen.

        In indexed mode entries come in central directory order.

        Raises:
            StructuralError: Malformed archive structure.
            InconsistencyError: Local headers disagree with the central directory.
        """
        if self.mode is AccessMode.INDEXED:
            directory = await self.directory()
            for central in directory.entries:
                yield await self.open_entry(central)
            return

        if self._iterated:
            raise UsageError("A sequential archive can only be iterated once.")
        self._iterated = True
        seen: Dict[int, EntryReader] = {}
        previous = None
        while True:
            if previous is not None and not previous.finished:
                await previous.skip()
            entry = EntryReader(self._source, self._execute_aio_task)
            header = await entry.read_header()
            if header is None:
                break
            seen[header.offset] = entry
            yield entry
            previous = entry
        __log__.debug("Read %d entries, central directory at offset %d", len(seen), self._source.offset)
        await self._read_trailing_directory(seen)

    async def _read_trailing_directory(self, seen: Dict[int, EntryReader]) -> None:
        cdir = CentralDirectoryReader(self._source, self.allow_trailing_data)
        entries: List[EntryHeader] = []
        async for central in cdir.iter_headers():
            entry = seen.pop(central.offset, None)
            if entry is None:
                raise StructuralError(
                    f"Central directory entry {central.filename!r} points at offset {central.offset}, "
                    f"where no local file header was read."
                )
            _check_entry_against_central(entry.header, central, checked=not entry.failed)
            entries.append(central)
        if seen:
            raise StructuralError(f"{len(seen)} entries are missing from the central directory.")
        self._directory = CentralDirectory(tuple(entries), cdir.end)

    async def directory(self) -> CentralDirectory:
        """
        Return the central directory.

        Raises:
            UsageError: In sequential mode, before all entries were iterated.
        """
        if self._directory is None:
            if self.mode is AccessMode.SEQUENTIAL:
                raise UsageError("The central directory is known once all entries have been read.")
            cdir = CentralDirectoryReader(self._source, self.allow_trailing_data)
            self._directory = await cdir.read_all()
            __log__.debug("Central directory holds %d entries", len(self._directory))
        return self._directory

    async def names(self) -> List[str]:
        directory = await self.directory()
        return list(directory.names())

    async def comment(self) -> bytes:
        directory = await self.directory()
        return directory.end.comment

    async def getinfo(self, member: Union[str, int, EntryHeader]) -> EntryHeader:
        """
        Raises:
            KeyError: No entry of that name.
            IndexError: Index out of range.
        """
        if isinstance(member, EntryHeader):
            return member
        directory = await self.directory()
        if isinstance(member, int):
            return directory.entries[member]
        header = directory.find(member)
        if header is None:
            raise KeyError(f"There is no item named {member!r} in the archive")
        return header

    async def open_entry(self, member: Union[str, int, EntryHeader]) -> EntryReader:
        """
        Seek to an entry's local header and return a reader positioned at its
        data. Only one entry can be read at a time.

        Raises:
            UsageError: In sequential mode.
            StructuralError: No local file header at the recorded offset.
            InconsistencyError: Local header disagrees with the central directory.
        """
        if self.mode is not AccessMode.INDEXED:
            raise UsageError("Random access to entries needs indexed mode.")
        central = await self.getinfo(member)
        await self._source.seek(central.offset)
        entry = EntryReader(self._source, self._execute_aio_task, central)
        if await entry.read_header() is None:
            raise StructuralError(f"No local file header for {central.filename!r} at offset {central.offset}.")
        return entry

    async def read(self, member: Union[str, int, EntryHeader]) -> bytes:
        """Return the checked, decompressed data of one entry."""
        entry = await self.open_entry(member)
        return await entry.read()


def _check_entry_against_central(local: EntryHeader, central: EntryHeader, checked: bool = True) -> None:
    """
    Compare a fully read local entry, descriptor applied, with its directory
    header. CRC and sizes are only compared for entries that passed their own
    checks; a failed entry has already raised.
    """
    check_local_against_central(local, central)
    if not checked:
        return
    for field in ("crc", "compressed_size", "uncompressed_size"):
        if getattr(local, field) != getattr(central, field):
            raise InconsistencyError(
                f"{field} of {central.filename!r} is {getattr(local, field)} in the stream, "
                f"{getattr(central, field)} in the central directory."
            )
