#
# Streaming entry reader
#
# Reads one local file header and the entry data behind it from a forward-only
# ByteSource. When the entry's sizes are deferred to a data descriptor, the end
# of the data is found by the codec's end-of-stream signal, or for stored
# entries by scanning for the descriptor itself.
#
import logging
import zlib
from typing import Any, AsyncIterator, Callable, Optional

from . import consts
from .base import (
    ChecksumError, EncryptedEntryError, InconsistencyError, StructuralError,
    TruncatedError, UnsupportedFeatureError, UsageError, ValidationError,
)
from .compression import DECODE_ERRORS, Decoder, get_codec, method_name
from .entry import DataDescriptor, EntryHeader
from .headers import data_descriptor_size, parse_data_descriptor, parse_local_header, unpack_local_header
from .streams import ByteSource

__all__ = ("EntryReader", "check_local_against_central")

__log__ = logging.getLogger(__name__)

# reader states
_HEADER = "header"
_BODY = "body"
_DESCRIPTOR = "descriptor"
_DONE = "done"
_FAILED = "failed"

# signatures that end the run of local file headers
END_OF_ENTRIES = (consts.CDFH_MAGIC, consts.CD_END_MAGIC, consts.CD_END_MAGIC64)


class EntryReader:
    """
    Reads a single archive entry from the current position of a source.

    Call order: ``read_header()``, then consume ``read_body()``, then
    ``read_descriptor()``. ``read()`` and ``skip()`` do all of it.

    Args:
        source: Byte source positioned at a local file header.
        execute: Coroutine function running a callable off the event loop,
            used for decompression. Runs inline when omitted.
        central: The central directory header for this entry, when known. Its
            compressed size delimits the data and every field the local header
            or descriptor repeats is checked against it.
    """

    def __init__(self, source: ByteSource,
                 execute: Optional[Callable[..., Any]] = None,
                 central: Optional[EntryHeader] = None) -> None:
        self._source = source
        self._execute = execute
        self._central = central
        self.header: Optional[EntryHeader] = None
        self.descriptor: Optional[DataDescriptor] = None
        self._state = _HEADER
        self._body_started = False
        self._decoder: Optional[Decoder] = None
        self._mode: Optional[str] = None
        self._scan_found = False
        self._raw_remaining: Optional[int] = None
        self._raw_count = 0
        self._crc = 0
        self._size = 0
        self._decoded = False
        self._invalid = False

    @property
    def offset(self) -> int:
        """Absolute offset of the next unread byte of the source."""
        return self._source.offset

    @property
    def crc(self) -> int:
        """CRC32 of the bytes produced so far."""
        return self._crc

    @property
    def finished(self) -> bool:
        return self._state == _DONE

    @property
    def failed(self) -> bool:
        """True once the entry data or its checksums failed validation."""
        return self._invalid or self._state == _FAILED

    async def read_header(self) -> Optional[EntryHeader]:
        """
        Parse the local file header at the current position.

        Returns:
            The header, or None when the source is positioned at the central
            directory instead (nothing is consumed in that case).

        Raises:
            StructuralError: Bad signature or truncated header.
            ValidationError: Malformed extra fields or zip64 sentinel without
                a zip64 extra field.
            InconsistencyError: The header contradicts the central directory.
        """
        if self._state != _HEADER:
            raise UsageError("The local header was already read.")
        offset = self._source.offset
        signature = await self._source.peek(len(consts.LF_MAGIC))
        if signature in END_OF_ENTRIES:
            self._state = _DONE
            return None
        if len(signature) < len(consts.LF_MAGIC):
            raise TruncatedError(f"Archive ends at offset {offset} without a central directory.")
        if signature != consts.LF_MAGIC:
            raise StructuralError(f"Expected a local file header at offset {offset}, found {signature!r}.")

        head = unpack_local_header(await self._source.read_exact(consts.LF_STRUCT.size, "local file header"))
        name = await self._source.read_exact(head.fname_len, "file name")
        extra = await self._source.read_exact(head.extra_len, "extra field")
        header = parse_local_header(head, name, extra, offset)
        if self._central is not None:
            check_local_against_central(header, self._central)
        self.header = header
        self._state = _BODY
        __log__.debug("Entry %r at offset %d (%s, deferred=%s)",
                      header.filename, offset, method_name(header.method), header.deferred)
        return header

    def _known_compressed_size(self) -> Optional[int]:
        if self._central is not None:
            return self._central.compressed_size
        if not self.header.deferred:
            return self.header.compressed_size
        return None

    def _start_body(self) -> None:
        header = self.header
        if header.encrypted:
            raise EncryptedEntryError(f"Entry {header.filename!r} is encrypted.")
        codec = get_codec(header.method)
        known = self._known_compressed_size()
        decoder = codec.decoder(known)
        if known is not None:
            self._mode = "sized"
        elif not decoder.self_delimiting:
            self._mode = "scan"
        else:
            self._mode = "delimited"
            if not decoder.reports_unused:
                raise UnsupportedFeatureError(
                    f"Entry {header.filename!r} uses {codec.name} with a data descriptor; "
                    f"its end cannot be found without the central directory."
                )
            if header.method == consts.COMPRESSION_LZMA and not header.flags & consts.LZMA_EOS_FLAG:
                raise UnsupportedFeatureError(
                    f"Entry {header.filename!r} is an lzma stream without end marker and has no known size."
                )
        self._decoder = decoder
        self._raw_remaining = known

    def _requires_end_marker(self) -> bool:
        if not self._decoder.self_delimiting:
            return False
        if self.header.method == consts.COMPRESSION_LZMA:
            return bool(self.header.flags & consts.LZMA_EOS_FLAG)
        return True

    async def _decode(self, chunk: bytes) -> bytes:
        try:
            if self._execute is not None:
                return await self._execute(self._decoder.decode, chunk)
            return self._decoder.decode(chunk)
        except DECODE_ERRORS as e:
            self._state = _FAILED
            raise ValidationError(f"Corrupt compressed data in entry {self.header.filename!r}: {e}") from e

    async def _next_sized(self) -> Optional[bytes]:
        if self._raw_remaining == 0 or self._decoder.eof:
            return None
        chunk = await self._source.peek_chunk()
        if not chunk:
            self._state = _FAILED
            raise TruncatedError(f"Archive ends inside the data of entry {self.header.filename!r}.")
        chunk = chunk[:self._raw_remaining]
        self._source.consume(len(chunk))
        self._raw_remaining -= len(chunk)
        self._raw_count += len(chunk)
        return await self._decode(chunk)

    async def _next_delimited(self) -> Optional[bytes]:
        if self._decoder.eof:
            return None
        chunk = await self._source.peek_chunk()
        if not chunk:
            self._state = _FAILED
            raise TruncatedError(f"Archive ends inside the data of entry {self.header.filename!r}.")
        data = await self._decode(chunk)
        used = len(chunk) - len(self._decoder.unused_data) if self._decoder.eof else len(chunk)
        self._source.consume(used)
        self._raw_count += used
        return data

    async def _next_scanned(self) -> Optional[bytes]:
        """Stored entry of unknown size: pass bytes through up to the data descriptor."""
        if self._scan_found:
            return None
        zip64 = self.header.zip64
        tail = data_descriptor_size(zip64)
        buf = await self._source.peek(self._source.chunksize + tail)
        if len(buf) < tail:
            self._state = _FAILED
            raise TruncatedError(f"No data descriptor found after entry {self.header.filename!r}.")
        pos = buf.find(consts.DD_MAGIC)
        while pos != -1 and pos + tail <= len(buf):
            candidate = parse_data_descriptor(buf[pos:pos + tail], zip64)
            size = self._raw_count + pos
            if candidate.compressed_size == size and candidate.uncompressed_size == size:
                self._scan_found = True
                break
            pos = buf.find(consts.DD_MAGIC, pos + 1)
        else:
            # a descriptor may still start in the last few bytes
            pos = len(buf) - tail + 1
        data = buf[:pos]
        self._source.consume(len(data))
        self._raw_count += len(data)
        return data

    async def _next(self) -> Optional[bytes]:
        if self._mode == "scan":
            return await self._next_scanned()
        if self._mode == "sized":
            return await self._next_sized()
        return await self._next_delimited()

    async def read_chunk(self) -> bytes:
        """
        Return the next piece of decompressed entry data, ``b""`` at the end.

        Raises:
            UnsupportedFeatureError: Unknown method or encrypted entry.
            ValidationError: Corrupt data, or CRC/size mismatch against a
                non-deferred local header.
        """
        if self._state == _HEADER:
            raise UsageError("read_header() must be called first.")
        if self._state == _FAILED:
            raise UsageError(f"Entry {self.header.filename!r} failed and yields no more data.")
        if self._state != _BODY:
            return b""
        if self._decoder is None:
            self._start_body()
        while True:
            data = await self._next()
            if data is None:
                break
            if data:
                return self._account(data)
        return await self._finish_body()

    def _account(self, data: bytes) -> bytes:
        self._crc = zlib.crc32(data, self._crc)
        self._size += len(data)
        return data

    async def _finish_body(self) -> bytes:
        header = self.header
        self._decoded = True
        tail = self._account(self._decoder.finish())
        self._state = _DESCRIPTOR if header.deferred else _DONE
        if self._mode == "sized":
            if self._decoder.eof and (self._raw_remaining or self._decoder.unused_data):
                await self._source.skip(self._raw_remaining)
                self._raw_count += self._raw_remaining
                self._raw_remaining = 0
                self._invalid = True
                raise ValidationError(f"Entry {header.filename!r} has data after the end of its compressed stream.")
            # some writers store empty entries with no compressed bytes at all
            if not self._decoder.eof and self._requires_end_marker() and self._raw_count:
                self._invalid = True
                raise ValidationError(f"Compressed data of entry {header.filename!r} ends before its stream does.")
        if not header.deferred:
            self._verify(header.crc, header.compressed_size, header.uncompressed_size, "local header")
        return tail

    def _verify(self, crc: int, comp_size: int, uncomp_size: int, where: str) -> None:
        name = self.header.filename
        problem = None
        if comp_size != self._raw_count:
            problem = f"Compressed size of {name!r} is {self._raw_count}, {where} says {comp_size}."
        elif self._decoded and crc != self._crc:
            problem = f"CRC32 of {name!r} is 0x{self._crc:08x}, {where} says 0x{crc:08x}."
        elif self._decoded and uncomp_size != self._size:
            problem = f"Size of {name!r} is {self._size}, {where} says {uncomp_size}."
        if problem is not None:
            self._invalid = True
            raise ChecksumError(problem)

    async def read_body(self) -> AsyncIterator[bytes]:
        """
        Lazily yield the decompressed entry data. Single pass, not restartable.
        """
        if self._body_started:
            raise UsageError("Entry data can only be read once.")
        self._body_started = True
        while True:
            chunk = await self.read_chunk()
            if not chunk:
                break
            yield chunk

    async def read_descriptor(self) -> Optional[DataDescriptor]:
        """
        Parse the data descriptor following the entry data, if the header
        announced one, and finalize the header with its values.

        Raises:
            ChecksumError: Descriptor disagrees with the data read.
            InconsistencyError: Descriptor disagrees with the central directory.
        """
        if self._state in (_HEADER, _BODY):
            raise UsageError("The entry data must be read before its data descriptor.")
        if self._state == _FAILED:
            raise UsageError(f"Entry {self.header.filename!r} failed and has no readable descriptor.")
        if self._state == _DONE:
            return self.descriptor
        zip64 = self.header.zip64
        signed = await self._source.peek(len(consts.DD_MAGIC)) == consts.DD_MAGIC
        data = await self._source.read_exact(data_descriptor_size(zip64, signed), "data descriptor")
        descriptor = parse_data_descriptor(data, zip64)
        self._state = _DONE
        self.descriptor = descriptor
        self.header = self.header._replace(
            crc=descriptor.crc,
            compressed_size=descriptor.compressed_size,
            uncompressed_size=descriptor.uncompressed_size,
        )
        self._verify(descriptor.crc, descriptor.compressed_size, descriptor.uncompressed_size, "data descriptor")
        if self._central is not None:
            central = self._central
            if (descriptor.crc, descriptor.compressed_size, descriptor.uncompressed_size) != \
                    (central.crc, central.compressed_size, central.uncompressed_size):
                raise InconsistencyError(
                    f"Data descriptor of {self.header.filename!r} disagrees with the central directory."
                )
        return descriptor

    async def read(self) -> bytes:
        """Read the whole entry, checked, and return its data."""
        if self._state == _HEADER:
            await self.read_header()
        chunks = [chunk async for chunk in self.read_body()]
        await self.read_descriptor()
        return b"".join(chunks)

    async def skip(self) -> None:
        """
        Move the source past this entry, whatever has been consumed so far.

        Entries whose size is known are skipped without decompressing; others
        are decoded to find their end.
        """
        if self._state == _HEADER:
            raise UsageError("read_header() must be called first.")
        if self._state == _FAILED:
            if self._mode != "sized":
                raise StructuralError(
                    f"Cannot find the end of corrupt entry {self.header.filename!r} in a stream."
                )
            await self._source.skip(self._raw_remaining)
            self._raw_count += self._raw_remaining
            self._raw_remaining = 0
            self._invalid = True
            self._state = _DESCRIPTOR if self.header.deferred else _DONE
        if self._state == _BODY:
            self._body_started = True
            known = self._known_compressed_size()
            if self._decoder is None and known is not None:
                await self._source.skip(known)
                self._raw_count = known
                self._state = _DESCRIPTOR if self.header.deferred else _DONE
            else:
                while await self.read_chunk():
                    pass
        if self._state == _DESCRIPTOR:
            await self.read_descriptor()


def check_local_against_central(local: EntryHeader, central: EntryHeader) -> None:
    """
    Raises:
        InconsistencyError: If fields both headers carry disagree.
    """
    name = central.filename
    if local.name != central.name:
        raise InconsistencyError(f"Local header name {local.name!r} does not match central directory {central.name!r}.")
    if local.method != central.method:
        raise InconsistencyError(
            f"Compression method of {name!r} is {local.method} locally, {central.method} in the central directory."
        )
    if local.deferred != central.deferred:
        raise InconsistencyError(f"Data descriptor flag of {name!r} differs from the central directory.")
    if not local.deferred:
        for field in ("crc", "compressed_size", "uncompressed_size"):
            if getattr(local, field) != getattr(central, field):
                raise InconsistencyError(
                    f"{field} of {name!r} is {getattr(local, field)} locally, "
                    f"{getattr(central, field)} in the central directory."
                )
