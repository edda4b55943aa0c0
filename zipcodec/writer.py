#
# ZIP File writing
# based on official ZIP File Format Specification version 6.3.4
# https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT
#
import logging
import time
import zlib
from typing import Any, AsyncIterable, Iterable, Optional, Tuple, Union

import aiofiles

from . import consts
from .base import ChecksumError, ExecutorMixin, UsageError, Zip64RequiredError
from .cdir import CentralDirectoryWriter
from .compression import Encoder, get_codec, method_name
from .entry import EntryHeader, ExtraField, dos_datetime, make_timestamp_extra
from .headers import make_data_descriptor, make_local_file_header, needs_zip64
from .streams import DEFAULT_CHUNK_SIZE, ByteSink

__all__ = ("AioZipWriter", "Processor")

__log__ = logging.getLogger(__name__)

DEFAULT_FILE_MODE: int = 0o100644
DEFAULT_DIR_MODE: int = 0o40755
MSDOS_DIR_ATTR: int = 0x10


class Processor:
    """
    Compresses entry data and keeps its CRC32 and both sizes.

    Args:
        encoder: Streaming encoder of the entry's compression method.
    """

    def __init__(self, encoder: Encoder) -> None:
        self.crc = 0
        self.o_size = self.c_size = 0
        self._encoder = encoder

    def process(self, chunk: bytes) -> bytes:
        self.o_size += len(chunk)
        self.crc = zlib.crc32(chunk, self.crc)
        chunk = self._encoder.encode(chunk)
        self.c_size += len(chunk)
        return chunk

    def tail(self) -> bytes:
        chunk = self._encoder.finish()
        self.c_size += len(chunk)
        return chunk

    def state(self) -> Tuple[int, int, int]:
        """
        Return crc, original size and compressed size
        """
        return self.crc, self.o_size, self.c_size


def encode_name(name: Union[str, bytes]) -> Tuple[bytes, int]:
    """Entry name as stored, and the flags it needs."""
    if isinstance(name, bytes):
        return name, 0
    try:
        return name.encode("ascii"), 0
    except UnicodeError:
        return name.encode("utf-8"), consts.UTF8_FLAG


class AioZipWriter(ExecutorMixin):
    """
    Asynchronous ZIP archive writer

    Entries are written one after another with ``start_entry``, ``write`` and
    ``finish_entry``; ``finalize`` writes the central directory.

    Args:
        sink: object with ``write(data)``, sync or async.
        zip64: Use ZIP64 records always (True), never (False, overflowing
            raises Zip64RequiredError) or when needed (None).
        compression: Default compression method id.
        compresslevel: Default compression level, method dependent.
        use_ddmagic: Write the optional data descriptor signature.
        chunksize: Size of chunks read from iterable entry data.
    """

    def __init__(self, sink: Any, *, zip64: Optional[bool] = None,
                 compression: int = consts.COMPRESSION_STORE, compresslevel: Optional[int] = None,
                 use_ddmagic: bool = True, chunksize: int = DEFAULT_CHUNK_SIZE) -> None:
        get_codec(compression)
        self._sink = sink if isinstance(sink, ByteSink) else ByteSink(sink)
        self.zip64 = zip64
        self.compression = compression
        self.compresslevel = compresslevel
        self.use_ddmagic = use_ddmagic
        self.chunksize = chunksize
        self._cdir = CentralDirectoryWriter(zip64)
        self._header: Optional[EntryHeader] = None
        self._processor: Optional[Processor] = None
        self._local_zip64 = False
        self._broken: Optional[str] = None
        self._handle = None

    @classmethod
    async def create(cls, path: str, **kwargs: Any) -> "AioZipWriter":
        """Create the archive at ``path`` with aiofiles; the writer closes it."""
        handle = await aiofiles.open(path, "wb")
        try:
            writer = cls(handle, **kwargs)
        except BaseException:
            await handle.close()
            raise
        writer._handle = handle
        return writer

    async def __aenter__(self) -> "AioZipWriter":
        return self

    async def __aexit__(self, exc_type: Any, *exc_info: Any) -> None:
        try:
            if exc_type is None and not self.finalized and self._broken is None:
                await self.finalize()
        finally:
            await self.close()

    async def close(self) -> None:
        """Release the executor and any file opened by ``create``. Does not finalize."""
        self._shutdown_executor()
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await handle.close()

    @property
    def offset(self) -> int:
        """Number of bytes written so far."""
        return self._sink.offset

    @property
    def finalized(self) -> bool:
        return self._cdir.finalized

    @property
    def entries(self) -> Tuple[EntryHeader, ...]:
        """Headers of the finished entries, as they go into the central directory."""
        return self._cdir.entries

    def zip64_required(self, what: str) -> None:
        """
        Raises:
            Zip64RequiredError: If ZIP64 records were explicitly disabled.
        """
        if self.zip64 is False:
            raise Zip64RequiredError(f"ZIP64 mode is required for {what}.")

    async def start_entry(self, name: Union[str, bytes], *,
                          compression: Optional[int] = None,
                          compresslevel: Optional[int] = None,
                          date_time: Optional[Tuple[int, ...]] = None,
                          mtime: Optional[float] = None,
                          comment: bytes = b"",
                          unix_mode: Optional[int] = None,
                          extra: Iterable[ExtraField] = (),
                          crc: Optional[int] = None,
                          size: Optional[int] = None,
                          compressed_size: Optional[int] = None,
                          zip64: Optional[bool] = None) -> EntryHeader:
        """
        Write the local file header of a new entry.

        Sizes and CRC go into the header only when ``crc``, ``size`` and
        ``compressed_size`` are all given; otherwise they follow the data in a
        data descriptor.

        Args:
            name: Entry name; ``str`` names that are not ASCII are stored as
                UTF-8 with the language encoding flag. A trailing ``/`` makes
                a directory entry.
            compression: Method id, the writer's default when None.
            compresslevel: Level for this entry, the writer's default when None.
            date_time: ``(year, month, day, hour, minute, second)``.
            mtime: POSIX modification time; also stored as an extended
                timestamp. The current time when neither is given.
            comment: Entry comment.
            unix_mode: Permission and type bits.
            extra: Additional extra fields.
            zip64: The entry may exceed 4 GiB; its local header and data
                descriptor use ZIP64 fields.

        Returns:
            The header as written, offset included.

        Raises:
            UsageError: Previous entry unfinished, the archive finalized, or
                an earlier entry failed in ``finish_entry``.
            UnsupportedCompressionError: No codec for ``compression``.
            Zip64RequiredError: The entry needs ZIP64 but it is disabled.
        """
        if self.finalized:
            raise UsageError("Cannot start an entry after the archive was finalized.")
        if self._broken is not None:
            raise UsageError(f"The archive is unusable after a failed entry: {self._broken}")
        if self._header is not None:
            raise UsageError(f"Entry {self._header.filename!r} must be finished first.")

        raw_name, flags = encode_name(name)
        if not raw_name:
            raise UsageError("Entry name must not be empty.")
        if len(raw_name) > 0xffff or len(comment) > 0xffff:
            raise UsageError(f"Entry name or comment of {raw_name!r} is longer than 65535 bytes.")
        is_dir = raw_name.endswith(b"/")
        method = self.compression if compression is None else compression
        if is_dir:
            method = consts.COMPRESSION_STORE
        codec = get_codec(method)
        if method == consts.COMPRESSION_LZMA:
            flags |= consts.LZMA_EOS_FLAG

        extra = tuple(extra)
        if mtime is not None:
            extra = (make_timestamp_extra(int(mtime)),) + tuple(f for f in extra if f.id != consts.EXTRA_TIMESTAMP)
            if date_time is None:
                date_time = time.localtime(mtime)[:6]
        dostime, dosdate = dos_datetime(date_time)

        if unix_mode is None:
            unix_mode = DEFAULT_DIR_MODE if is_dir else DEFAULT_FILE_MODE
        external_attr = unix_mode << 16
        if is_dir:
            external_attr |= MSDOS_DIR_ATTR

        sized = crc is not None and size is not None and compressed_size is not None
        if not sized:
            flags |= consts.DATA_DESCRIPTOR_FLAG
            crc = size = compressed_size = 0
        elif size >= consts.ZIP64_LIMIT or compressed_size >= consts.ZIP64_LIMIT:
            zip64 = True
        if self.zip64:
            zip64 = True
        if zip64:
            self.zip64_required(f"entry {raw_name!r}")

        version = max(codec.version, consts.ZIP64_VERSION if zip64 else consts.ZIP32_VERSION)
        header = EntryHeader(
            name=raw_name,
            method=method,
            flags=flags,
            crc=crc,
            compressed_size=compressed_size,
            uncompressed_size=size,
            mod_time=dostime,
            mod_date=dosdate,
            extra=extra,
            comment=comment,
            version=version,
            system=consts.SYSTEM_UNIX,
            version_needed=version,
            external_attr=external_attr,
            offset=self._sink.offset,
        )
        if header.offset >= consts.ZIP64_LIMIT:
            self.zip64_required(f"entry {raw_name!r} at offset {header.offset}")

        level = self.compresslevel if compresslevel is None else compresslevel
        encoder = await self._execute_aio_task(codec.encoder, level)
        await self._sink.write(make_local_file_header(header, zip64=bool(zip64)))
        self._header = header
        self._processor = Processor(encoder)
        self._local_zip64 = bool(zip64)
        __log__.debug("Entry %r started at offset %d (%s, zip64=%s)",
                      header.filename, header.offset, method_name(method), self._local_zip64)
        return header

    async def write(self, data: bytes) -> None:
        """
        Compress and write a piece of the current entry's data.

        Raises:
            UsageError: No entry started.
        """
        if self._header is None:
            raise UsageError("start_entry() must be called before write().")
        if not data:
            return
        if self._header.is_dir:
            raise UsageError(f"Directory entry {self._header.filename!r} cannot hold data.")
        chunk = await self._execute_aio_task(self._processor.process, data)
        await self._sink.write(chunk)

    async def finish_entry(self) -> EntryHeader:
        """
        Flush the compressor, write the data descriptor of a deferred entry
        and record the entry for the central directory.

        Returns:
            The final header.

        Raises:
            UsageError: No entry started.
            ChecksumError: Data written disagrees with the sizes or CRC given
                to ``start_entry``.
            Zip64RequiredError: The entry outgrew 32-bit fields.

        After a ChecksumError or a zip64 overflow of a deferred entry the
        local header and data are already written, so the writer accepts no
        further entries and cannot be finalized.
        """
        header = self._header
        if header is None:
            raise UsageError("No entry to finish.")
        tail = await self._execute_aio_task(self._processor.tail)
        await self._sink.write(tail)
        crc, o_size, c_size = self._processor.state()
        self._header = self._processor = None

        if header.deferred:
            if not self._local_zip64 and (o_size >= consts.ZIP64_LIMIT or c_size >= consts.ZIP64_LIMIT):
                self._broken = f"entry {header.filename!r} outgrew its 32-bit local header"
                raise Zip64RequiredError(
                    f"Entry {header.filename!r} exceeds 4 GiB; start it with zip64=True."
                )
            await self._sink.write(
                make_data_descriptor(crc, c_size, o_size, zip64=self._local_zip64, use_ddmagic=self.use_ddmagic)
            )
        elif (crc, c_size, o_size) != (header.crc, header.compressed_size, header.uncompressed_size):
            self._broken = f"entry {header.filename!r} does not match its declared crc and sizes"
            raise ChecksumError(
                f"Entry {header.filename!r} was declared with crc 0x{header.crc:08x}, "
                f"sizes {header.compressed_size}/{header.uncompressed_size}, "
                f"written 0x{crc:08x}, {c_size}/{o_size}."
            )

        header = header._replace(crc=crc, compressed_size=c_size, uncompressed_size=o_size)
        if needs_zip64(header):
            self.zip64_required(f"entry {header.filename!r}")
        self._cdir.append(header)
        __log__.debug("Entry %r finished: %d bytes, %d compressed, crc 0x%08x",
                      header.filename, o_size, c_size, crc)
        return header

    async def write_entry(self, name: Union[str, bytes],
                          data: Union[bytes, Iterable[bytes], AsyncIterable[bytes]] = b"",
                          **kwargs: Any) -> EntryHeader:
        """
        Write a whole entry; ``data`` is bytes or a (sync or async) iterable
        of chunks. Keyword arguments go to ``start_entry``.

        Stored entries given as bytes get their CRC and sizes in the local
        header instead of a data descriptor.
        """
        is_bytes = isinstance(data, (bytes, bytearray, memoryview))
        if is_bytes:
            data = bytes(data)
            method = kwargs.get("compression")
            if method is None:
                method = self.compression
            if method == consts.COMPRESSION_STORE and kwargs.get("crc") is None:
                kwargs.update(crc=zlib.crc32(data), size=len(data), compressed_size=len(data))
        await self.start_entry(name, **kwargs)
        if is_bytes:
            for pos in range(0, len(data), self.chunksize):
                await self.write(data[pos:pos + self.chunksize])
        elif hasattr(data, "__aiter__"):
            async for chunk in data:
                await self.write(chunk)
        else:
            for chunk in data:
                await self.write(chunk)
        return await self.finish_entry()

    async def finalize(self, comment: Union[str, bytes] = b"") -> None:
        """
        Write the central directory and end records. The writer accepts no
        more entries afterwards.

        Raises:
            UsageError: An entry is unfinished, the archive is already
                finalized, or an earlier entry failed in ``finish_entry``.
            Zip64RequiredError: The directory needs ZIP64 but it is disabled.
        """
        if self._broken is not None:
            raise UsageError(f"The archive is unusable after a failed entry: {self._broken}")
        if self._header is not None:
            raise UsageError(f"Entry {self._header.filename!r} must be finished first.")
        if isinstance(comment, str):
            comment = comment.encode("utf-8")
        offset = self._sink.offset
        for chunk in self._cdir.finalize(offset, comment):
            await self._sink.write(chunk)
        await self._sink.flush()
        __log__.debug("Central directory of %d entries written at offset %d", len(self._cdir), offset)
