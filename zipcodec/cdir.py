#
# Central directory reading and writing
#
import logging
from typing import AsyncIterator, Iterator, List, Optional

from . import consts
from .base import StructuralError, TruncatedError, UsageError, Zip64RequiredError
from .entry import CentralDirectory, EndOfCentralDirectory, EntryHeader
from .headers import (
    cdend_needs_zip64, combine_cdend, make_cdend, make_cdend64, make_cdir_file_header,
    make_eocd64_locator, parse_central_header, unpack_cdend, unpack_cdend64,
    unpack_cdir_header, unpack_eocd64_locator,
)
from .streams import ByteSource

__all__ = ("CentralDirectoryReader", "CentralDirectoryWriter")

__log__ = logging.getLogger(__name__)


class CentralDirectoryReader:
    """
    Reads the central directory, either located from the end of a seekable
    source (``read_all``/``locate_eocd``) or streamed forward from the current
    position (``iter_headers``).

    Args:
        source: The archive source.
        allow_trailing_data: Accept bytes after the end of central directory
            record instead of failing.
    """

    def __init__(self, source: ByteSource, allow_trailing_data: bool = False) -> None:
        self._source = source
        self.allow_trailing_data = allow_trailing_data
        self.end: Optional[EndOfCentralDirectory] = None

    async def _read_header(self) -> EntryHeader:
        head = unpack_cdir_header(await self._source.read_exact(consts.CDLF_STRUCT.size, "central directory header"))
        name = await self._source.read_exact(head.fname_len, "file name")
        extra = await self._source.read_exact(head.extra_len, "extra field")
        comment = await self._source.read_exact(head.fcomm_len, "file comment")
        return parse_central_header(head, name, extra, comment)

    def _check_trailing(self, trailing: int) -> None:
        if not trailing:
            return
        if not self.allow_trailing_data:
            raise StructuralError(f"{trailing} bytes of trailing data after the end of central directory record.")
        __log__.warning("Ignoring %d bytes after the end of central directory record", trailing)

    async def locate_eocd(self) -> EndOfCentralDirectory:
        """
        Find and parse the end of central directory record (and its zip64
        counterpart) by scanning backwards from the end of a seekable source.

        Raises:
            StructuralError: No record within the maximum comment window, or
                the declared directory does not end where the record begins.
        """
        source = self._source
        size = await source.size()
        if size < consts.CD_END_STRUCT.size:
            raise TruncatedError(f"Source of {size} bytes is too small to be a zip archive.")
        window = min(size, consts.EOCD_SEARCH_WINDOW)
        base = size - window
        tail = await source.read_at(base, window, "end of central directory")

        found = None
        fallback = None
        pos = tail.rfind(consts.CD_END_MAGIC)
        while pos != -1:
            if pos + consts.CD_END_STRUCT.size <= len(tail):
                cdend = unpack_cdend(tail[pos:pos + consts.CD_END_STRUCT.size])
                record_end = pos + consts.CD_END_STRUCT.size + cdend.comment_len
                if record_end == len(tail):
                    found = pos, cdend
                    break
                if record_end < len(tail) and fallback is None:
                    fallback = pos, cdend
            pos = tail.rfind(consts.CD_END_MAGIC, 0, pos)
        if found is None:
            if fallback is None:
                raise StructuralError(
                    f"End of central directory record not found in the last {window} bytes."
                )
            found = fallback
            pos, cdend = found
            self._check_trailing(len(tail) - (pos + consts.CD_END_STRUCT.size + cdend.comment_len))
        pos, cdend = found
        eocd_offset = base + pos
        comment_start = pos + consts.CD_END_STRUCT.size
        comment = tail[comment_start:comment_start + cdend.comment_len]
        __log__.debug("End of central directory record at offset %d", eocd_offset)

        cdend64 = None
        dir_end = eocd_offset
        if eocd_offset >= consts.CD_LOC64_STRUCT.size:
            locator_offset = eocd_offset - consts.CD_LOC64_STRUCT.size
            data = await source.read_at(locator_offset, consts.CD_LOC64_STRUCT.size, "zip64 locator")
            if data[:4] == consts.CD_LOC64_MAGIC:
                locator = unpack_eocd64_locator(data)
                if locator.offset + consts.CD_END_STRUCT64.size > locator_offset:
                    raise StructuralError(f"Zip64 locator points past itself, to offset {locator.offset}.")
                cdend64 = unpack_cdend64(
                    await source.read_at(locator.offset, consts.CD_END_STRUCT64.size, "zip64 end of central directory")
                )
                if locator.offset + 12 + cdend64.zip64_eocd_size != locator_offset:
                    raise StructuralError("Zip64 end of central directory record does not end at its locator.")
                dir_end = locator.offset
                __log__.debug("Zip64 end of central directory record at offset %d", locator.offset)

        end = combine_cdend(cdend, comment, cdend64)
        if end.cd_offset + end.cd_size != dir_end:
            raise StructuralError(
                f"Central directory declared at offset {end.cd_offset} with size {end.cd_size} "
                f"does not end at offset {dir_end}."
            )
        self.end = end
        return end

    async def read_all(self) -> CentralDirectory:
        """
        Materialize the whole central directory.

        A seekable source is read from the end; otherwise the directory is
        streamed from the current position.

        Raises:
            StructuralError: Header count or directory size disagree with the
                end of central directory record.
        """
        if not self._source.seekable:
            entries = [header async for header in self.iter_headers()]
            return CentralDirectory(tuple(entries), self.end)

        end = await self.locate_eocd()
        await self._source.seek(end.cd_offset)
        entries = []
        for idx in range(end.entry_count):
            signature = await self._source.peek(len(consts.CDFH_MAGIC))
            if signature != consts.CDFH_MAGIC:
                raise StructuralError(
                    f"End of central directory declares {end.entry_count} entries, found {idx}."
                )
            entries.append(await self._read_header())
        if self._source.offset != end.cd_offset + end.cd_size:
            raise StructuralError(
                f"Central directory is {self._source.offset - end.cd_offset} bytes, "
                f"end of central directory declares {end.cd_size}."
            )
        return CentralDirectory(tuple(entries), end)

    async def iter_headers(self) -> AsyncIterator[EntryHeader]:
        """
        Yield central directory headers in stream order from the current
        position, then validate the end of central directory record against
        what was actually read. Single pass.
        """
        source = self._source
        start = source.offset
        count = 0
        while True:
            signature = await source.peek(4)
            if signature != consts.CDFH_MAGIC:
                break
            header = await self._read_header()
            count += 1
            yield header

        dir_end = source.offset
        cdend64 = None
        if signature == consts.CD_END_MAGIC64:
            cdend64 = unpack_cdend64(await source.read_exact(consts.CD_END_STRUCT64.size, "zip64 end of central directory"))
            extensible = cdend64.zip64_eocd_size + 12 - consts.CD_END_STRUCT64.size
            if extensible < 0:
                raise StructuralError(f"Zip64 end of central directory declares size {cdend64.zip64_eocd_size}.")
            await source.skip(extensible, "zip64 extensible data")
            locator = unpack_eocd64_locator(await source.read_exact(consts.CD_LOC64_STRUCT.size, "zip64 locator"))
            if locator.offset != dir_end:
                raise StructuralError(
                    f"Zip64 locator points at offset {locator.offset}, the record is at {dir_end}."
                )
            signature = await source.peek(4)
        if signature != consts.CD_END_MAGIC:
            if len(signature) < 4:
                raise TruncatedError("Archive ends inside the central directory.")
            raise StructuralError(f"Unexpected signature {signature!r} in central directory at offset {source.offset}.")

        cdend = unpack_cdend(await source.read_exact(consts.CD_END_STRUCT.size, "end of central directory"))
        comment = await source.read_exact(cdend.comment_len, "archive comment")
        end = combine_cdend(cdend, comment, cdend64)
        if end.entry_count != count:
            raise StructuralError(f"End of central directory declares {end.entry_count} entries, found {count}.")
        if end.cd_offset != start or end.cd_size != dir_end - start:
            raise StructuralError(
                f"End of central directory declares offset {end.cd_offset} size {end.cd_size}, "
                f"directory read at offset {start} size {dir_end - start}."
            )
        trailing = 0
        while True:
            chunk = await source.read(source.chunksize)
            if not chunk:
                break
            trailing += len(chunk)
        self._check_trailing(trailing)
        self.end = end


class CentralDirectoryWriter:
    """
    Collects one directory header per written entry and emits the central
    directory and end records once, at the end of the archive.

    Args:
        zip64: ``True`` always writes zip64 records, ``False`` forbids them,
            ``None`` writes them only when a value overflows.
    """

    def __init__(self, zip64: Optional[bool] = None) -> None:
        self.zip64 = zip64
        self.finalized = False
        self._headers: List[EntryHeader] = []

    def __len__(self) -> int:
        return len(self._headers)

    @property
    def entries(self):
        return tuple(self._headers)

    def append(self, header: EntryHeader) -> None:
        if self.finalized:
            raise UsageError("The central directory was already written.")
        self._headers.append(header)

    def finalize(self, offset: int, comment: bytes = b"") -> Iterator[bytes]:
        """
        Emit the directory headers in entry order, then the end records.

        Args:
            offset: Absolute offset at which the directory starts.
            comment: Archive comment.

        Raises:
            UsageError: Called twice, or comment too long.
            Zip64RequiredError: Zip64 records are needed but disabled.
        """
        if self.finalized:
            raise UsageError("The central directory was already written.")
        if len(comment) > consts.MAX_COMMENT_LEN:
            raise UsageError(f"Archive comment is {len(comment)} bytes, at most {consts.MAX_COMMENT_LEN} allowed.")
        chunks = [make_cdir_file_header(header, zip64=self.zip64 is True) for header in self._headers]
        cd_size = sum(len(chunk) for chunk in chunks)
        end = EndOfCentralDirectory(len(self._headers), cd_size, offset, comment)
        if self.zip64 or cdend_needs_zip64(end):
            if self.zip64 is False:
                raise Zip64RequiredError("ZIP64 end of central directory is required for this archive.")
            end = end._replace(zip64=True)
        self.finalized = True

        # Write all central directory entries
        for chunk in chunks:
            yield chunk
        # If using ZIP64
        if end.zip64:
            # Calculate EOCD64 position
            eocd64position = offset + cd_size
            # Write ZIP64 EOCD
            yield make_cdend64(end)
            # Write ZIP64 EOCD locator
            yield make_eocd64_locator(eocd64position)
        # Write EOCD
        yield make_cdend(end)
