#
# Compression method registry
#
# Each supported method id maps to a Codec: a pair of factories producing an
# Encoder and a Decoder. Optional backends register themselves only when their
# library can be imported; a method without a registered codec is unsupported.
#
import bz2
import lzma
import struct
import zlib
from typing import Callable, Dict, NamedTuple, Optional

from . import consts
from .base import UnsupportedCompressionError

try:
    import zstandard
except ImportError:
    zstandard = None

try:
    import inflate64
except ImportError:
    inflate64 = None

__all__ = ("Codec", "Encoder", "Decoder", "register_codec", "get_codec", "supported_methods", "method_name", "method_by_name")

DEFAULT_DEFLATE_LEVEL: int = 5

# what the codec libraries raise on corrupt input
DECODE_ERRORS = (zlib.error, lzma.LZMAError, OSError, EOFError, ValueError)
if zstandard is not None:
    DECODE_ERRORS += (zstandard.ZstdError,)


class Encoder:
    """Streaming compressor: ``encode`` chunks, then ``finish`` once."""

    def __init__(self, compressor) -> None:
        self._obj = compressor

    def encode(self, chunk: bytes) -> bytes:
        return self._obj.compress(chunk)

    def finish(self) -> bytes:
        return self._obj.flush()


class Decoder:
    """
    Streaming decompressor with an end-of-stream signal.

    ``decode`` returns the bytes produced so far. Once ``eof`` is true, any
    input past the end of the compressed stream is kept in ``unused_data``.
    """

    # whether the stream ends itself, so entry data can be delimited without a size
    self_delimiting: bool = True
    # whether ``unused_data`` is reported by the backend
    reports_unused: bool = True

    def __init__(self, decompressor) -> None:
        self._obj = decompressor

    @property
    def eof(self) -> bool:
        return self._obj.eof

    @property
    def unused_data(self) -> bytes:
        return self._obj.unused_data

    def decode(self, chunk: bytes) -> bytes:
        return self._obj.decompress(chunk)

    def finish(self) -> bytes:
        return b""


# no compression
class StoredEncoder(Encoder):
    def __init__(self) -> None:
        super().__init__(None)

    def encode(self, chunk: bytes) -> bytes:
        return chunk

    def finish(self) -> bytes:
        return b""


class StoredDecoder(Decoder):
    """Pass-through; only ends when told how many bytes the entry holds."""

    self_delimiting = False

    def __init__(self, size: Optional[int] = None) -> None:
        super().__init__(None)
        self._remaining = size
        self._unused = b""

    @property
    def eof(self) -> bool:
        return self._remaining == 0

    @property
    def unused_data(self) -> bytes:
        return self._unused

    def decode(self, chunk: bytes) -> bytes:
        if self._remaining is None:
            return chunk
        take = min(len(chunk), self._remaining)
        self._remaining -= take
        self._unused += chunk[take:]
        return chunk[:take]


# deflate compression
class DeflateDecoder(Decoder):
    def __init__(self, size: Optional[int] = None) -> None:
        super().__init__(zlib.decompressobj(-15))

    def finish(self) -> bytes:
        return self._obj.flush()


# lzma as stored in zip: 2 bytes version, 2 bytes properties size, properties, raw LZMA1 data
class LzmaEncoder(Encoder):
    def __init__(self) -> None:
        props = lzma._encode_filter_properties({"id": lzma.FILTER_LZMA1})
        super().__init__(lzma.LZMACompressor(lzma.FORMAT_RAW, filters=[
            lzma._decode_filter_properties(lzma.FILTER_LZMA1, props)
        ]))
        self._header = struct.pack("<BBH", 9, 4, len(props)) + props

    def encode(self, chunk: bytes) -> bytes:
        data = self._obj.compress(chunk)
        if self._header:
            data, self._header = self._header + data, b""
        return data

    def finish(self) -> bytes:
        data = self._obj.flush()
        if self._header:
            data, self._header = self._header + data, b""
        return data


class LzmaDecoder(Decoder):
    def __init__(self, size: Optional[int] = None) -> None:
        super().__init__(None)
        self._pending = b""

    @property
    def eof(self) -> bool:
        return self._obj is not None and self._obj.eof

    @property
    def unused_data(self) -> bytes:
        if self._obj is None:
            return b""
        return self._obj.unused_data

    def decode(self, chunk: bytes) -> bytes:
        if self._obj is None:
            self._pending += chunk
            if len(self._pending) < 4:
                return b""
            psize, = struct.unpack("<H", self._pending[2:4])
            if len(self._pending) < 4 + psize:
                return b""
            filters = [lzma._decode_filter_properties(lzma.FILTER_LZMA1, self._pending[4:4 + psize])]
            self._obj = lzma.LZMADecompressor(lzma.FORMAT_RAW, filters=filters)
            chunk, self._pending = self._pending[4 + psize:], b""
        return self._obj.decompress(chunk)


class XzEncoder(Encoder):
    def __init__(self) -> None:
        super().__init__(lzma.LZMACompressor(lzma.FORMAT_XZ))


class XzDecoder(Decoder):
    def __init__(self, size: Optional[int] = None) -> None:
        super().__init__(lzma.LZMADecompressor(lzma.FORMAT_XZ))


# zstandard
class ZstdEncoder(Encoder):
    def __init__(self, level: Optional[int] = None) -> None:
        cctx = zstandard.ZstdCompressor(level=3 if level is None else level)
        super().__init__(cctx.compressobj())


class ZstdDecoder(Decoder):
    def __init__(self, size: Optional[int] = None) -> None:
        super().__init__(zstandard.ZstdDecompressor().decompressobj())


# deflate64
class Deflate64Encoder(Encoder):
    def __init__(self) -> None:
        super().__init__(inflate64.Deflater())

    def encode(self, chunk: bytes) -> bytes:
        return self._obj.deflate(chunk)


class Deflate64Decoder(Decoder):
    # inflate64 keeps no record of input read past the end of the stream
    reports_unused = False

    def __init__(self, size: Optional[int] = None) -> None:
        super().__init__(inflate64.Inflater())

    @property
    def unused_data(self) -> bytes:
        return b""

    def decode(self, chunk: bytes) -> bytes:
        return self._obj.inflate(chunk)


class Codec(NamedTuple):
    method: int
    name: str
    version: int
    encoder: Callable[[Optional[int]], Encoder]
    decoder: Callable[[Optional[int]], Decoder]


CODECS: Dict[int, Codec] = {}


def register_codec(method: int, name: str, encoder: Callable[[Optional[int]], Encoder],
                   decoder: Callable[[Optional[int]], Decoder], version: int = consts.ZIP32_VERSION) -> None:
    """
    Register a codec for a compression method id.

    Args:
        method: The method id stored in headers.
        name: Human readable name.
        encoder: Factory taking a compression level (or None) and returning an Encoder.
        decoder: Factory taking the compressed size (or None when unknown) and returning a Decoder.
        version: Minimum "version needed to extract" for entries using this method.
    """
    CODECS[method] = Codec(method, name, version, encoder, decoder)


def get_codec(method: int) -> Codec:
    """
    Raises:
        UnsupportedCompressionError: If no codec is registered for ``method``.
    """
    try:
        return CODECS[method]
    except KeyError:
        raise UnsupportedCompressionError(f"Unsupported compression method {method}.") from None


def supported_methods():
    return sorted(CODECS)


def method_name(method: int) -> str:
    codec = CODECS.get(method)
    return codec.name if codec is not None else f"method {method}"


register_codec(
    consts.COMPRESSION_STORE, "stored",
    lambda level: StoredEncoder(),
    StoredDecoder,
)
register_codec(
    consts.COMPRESSION_DEFLATE, "deflate",
    lambda level: Encoder(zlib.compressobj(DEFAULT_DEFLATE_LEVEL if level is None else level, zlib.DEFLATED, -15)),
    DeflateDecoder,
)
register_codec(
    consts.COMPRESSION_BZIP2, "bzip2",
    lambda level: Encoder(bz2.BZ2Compressor(9 if level is None else level)),
    lambda size: Decoder(bz2.BZ2Decompressor()),
    consts.BZIP2_VERSION,
)
register_codec(
    consts.COMPRESSION_LZMA, "lzma",
    lambda level: LzmaEncoder(),
    LzmaDecoder,
    consts.LZMA_VERSION,
)
register_codec(
    consts.COMPRESSION_XZ, "xz",
    lambda level: XzEncoder(),
    XzDecoder,
    consts.XZ_VERSION,
)
if zstandard is not None:
    register_codec(consts.COMPRESSION_ZSTD, "zstd", ZstdEncoder, ZstdDecoder, consts.ZSTD_VERSION)
if inflate64 is not None:
    register_codec(
        consts.COMPRESSION_DEFLATE64, "deflate64",
        lambda level: Deflate64Encoder(),
        Deflate64Decoder,
        consts.DEFLATE64_VERSION,
    )


def method_by_name(name: str) -> int:
    """
    Raises:
        UnsupportedCompressionError: If no registered codec has that name.
    """
    for codec in CODECS.values():
        if codec.name == name:
            return codec.method
    raise UnsupportedCompressionError(f"Unsupported compression method '{name}'.")
