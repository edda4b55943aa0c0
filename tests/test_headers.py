import asyncio
import io
import logging
import struct
import zlib

import pytest

import zipcodec
from zipcodec import consts
from zipcodec.compression import StoredDecoder, get_codec, method_name, supported_methods
from zipcodec.entry import (
    DOS_EPOCH_DATE, EntryHeader, ExtraField, dos_datetime, dos_to_tuple,
    make_extra_field, parse_extra_fields, resolve_zip64,
)
from zipcodec.headers import (
    make_cdend, make_cdir_file_header, make_data_descriptor, make_local_file_header,
    parse_central_header, parse_data_descriptor, parse_local_header, unpack_cdend,
    unpack_cdir_header, unpack_local_header,
)
from zipcodec.streams import ByteSource


def split_central(data):
    head = unpack_cdir_header(data[:consts.CDLF_STRUCT.size])
    pos = consts.CDLF_STRUCT.size
    name = data[pos:pos + head.fname_len]
    pos += head.fname_len
    extra = data[pos:pos + head.extra_len]
    pos += head.extra_len
    return parse_central_header(head, name, extra, data[pos:pos + head.fcomm_len])


def split_local(data, offset=0):
    head = unpack_local_header(data[:consts.LF_STRUCT.size])
    pos = consts.LF_STRUCT.size
    name = data[pos:pos + head.fname_len]
    extra = data[pos + head.fname_len:pos + head.fname_len + head.extra_len]
    return parse_local_header(head, name, extra, offset)


def test_extra_fields_parsed_in_order():
    data = make_extra_field(0x5455, b"\x01\x00\x00\x00\x00") + make_extra_field(0xcafe, b"abc")
    fields = parse_extra_fields(data)
    assert fields == (ExtraField(0x5455, b"\x01\x00\x00\x00\x00"), ExtraField(0xcafe, b"abc"))


def test_extra_field_overrun():
    with pytest.raises(zipcodec.ExtraFieldError):
        parse_extra_fields(struct.pack("<HH", 0xcafe, 10) + b"abc")


def test_extra_field_duplicate():
    field = make_extra_field(0xcafe, b"x")
    with pytest.raises(zipcodec.ExtraFieldError):
        parse_extra_fields(field + field)


def test_extra_field_padding_is_ignored(caplog):
    caplog.set_level(logging.WARNING, logger="zipcodec")
    assert parse_extra_fields(make_extra_field(0xcafe, b"x") + b"\x00\x00") == (ExtraField(0xcafe, b"x"),)
    assert "padding" in caplog.text


@pytest.mark.parametrize("field", [
    ExtraField(consts.EXTRA_TIMESTAMP, b""),
    ExtraField(consts.EXTRA_TIMESTAMP, b"\x01\x00"),
    ExtraField(consts.EXTRA_UNIX_IDS, b"\x01\x04\x00"),
    ExtraField(consts.EXTRA_UNICODE_PATH, b"\x01\x00"),
])
def test_truncated_known_extra_fields(field):
    with pytest.raises(zipcodec.ExtraFieldError):
        parse_extra_fields(make_extra_field(field.id, field.data))


def test_unix_ids_field():
    data = b"\x01\x04" + struct.pack("<L", 1000) + b"\x04" + struct.pack("<L", 100)
    assert parse_extra_fields(make_extra_field(consts.EXTRA_UNIX_IDS, data))[0].data == data


def test_resolve_zip64_only_sentinel_fields():
    extra = (ExtraField(consts.EXTRA_ZIP64, struct.pack("<Q", 5 * 2**32)),)
    assert resolve_zip64(extra, 10, consts.ZIP64_LIMIT, 100, 0) == (10, 5 * 2**32, 100, 0)


def test_resolve_zip64_leftover_bytes():
    extra = (ExtraField(consts.EXTRA_ZIP64, struct.pack("<QQ", 1, 2)),)
    with pytest.raises(zipcodec.ExtraFieldError):
        resolve_zip64(extra, consts.ZIP64_LIMIT, 10, 0, 0)


def test_resolve_zip64_too_short():
    extra = (ExtraField(consts.EXTRA_ZIP64, struct.pack("<Q", 1)),)
    with pytest.raises(zipcodec.ExtraFieldError):
        resolve_zip64(extra, consts.ZIP64_LIMIT, consts.ZIP64_LIMIT, 0, 0)


def test_resolve_zip64_sentinel_without_extra():
    with pytest.raises(zipcodec.ExtraFieldError):
        resolve_zip64((), 10, consts.ZIP64_LIMIT)


def test_resolve_zip64_lenient_local_extra(caplog):
    caplog.set_level(logging.WARNING, logger="zipcodec")
    extra = (ExtraField(consts.EXTRA_ZIP64, struct.pack("<QQ", 7, 3)),)
    assert resolve_zip64(extra, 7, 3, local=True) == (7, 3, None, None)
    assert "repeats" in caplog.text


def test_local_header_zip64_sizes():
    header = EntryHeader(name=b"big.bin", crc=1, compressed_size=2**33, uncompressed_size=2**34)
    data = make_local_file_header(header, zip64=True)
    head = unpack_local_header(data[:consts.LF_STRUCT.size])
    assert head.comp_size == head.uncomp_size == consts.ZIP64_LIMIT
    assert head.version == consts.ZIP64_VERSION
    parsed = split_local(data, offset=123)
    assert parsed.compressed_size == 2**33
    assert parsed.uncompressed_size == 2**34
    assert parsed.offset == 123
    assert parsed.zip64


def test_deferred_local_header_has_placeholders():
    header = EntryHeader(name=b"d", flags=consts.DATA_DESCRIPTOR_FLAG, crc=5, compressed_size=6, uncompressed_size=7)
    head = unpack_local_header(make_local_file_header(header)[:consts.LF_STRUCT.size])
    assert (head.crc, head.comp_size, head.uncomp_size) == (0, 0, 0)


def test_central_header_zip64_offset_only():
    header = EntryHeader(name=b"far.txt", crc=9, compressed_size=10, uncompressed_size=20,
                         offset=6 * 2**30, comment=b"note")
    data = make_cdir_file_header(header)
    head = unpack_cdir_header(data[:consts.CDLF_STRUCT.size])
    assert head.offset == consts.ZIP64_LIMIT
    assert (head.comp_size, head.uncomp_size) == (10, 20)
    parsed = split_central(data)
    assert parsed.offset == 6 * 2**30
    assert parsed.comment == b"note"
    assert parsed.version_needed == consts.ZIP64_VERSION
    assert (parsed.crc, parsed.compressed_size, parsed.uncompressed_size) == (9, 10, 20)


def test_central_header_bad_utf8_name():
    header = EntryHeader(name=b"\xff\xfe", flags=consts.UTF8_FLAG)
    with pytest.raises(zipcodec.ValidationError):
        split_central(make_cdir_file_header(header))


def test_bad_signature():
    data = make_cdir_file_header(EntryHeader(name=b"x"))
    with pytest.raises(zipcodec.StructuralError):
        unpack_local_header(data[:consts.LF_STRUCT.size])


@pytest.mark.parametrize("zip64", [False, True])
@pytest.mark.parametrize("use_ddmagic", [False, True])
def test_data_descriptor(zip64, use_ddmagic):
    data = make_data_descriptor(0xdeadbeef, 10, 20, zip64=zip64, use_ddmagic=use_ddmagic)
    assert len(data) == (20 if zip64 else 12) + (4 if use_ddmagic else 0)
    descriptor = parse_data_descriptor(data, zip64)
    assert (descriptor.crc, descriptor.compressed_size, descriptor.uncompressed_size) == (0xdeadbeef, 10, 20)
    assert descriptor.signed == use_ddmagic


def test_cdend_clamped_for_zip64():
    end = zipcodec.EndOfCentralDirectory(entry_count=70000, cd_size=100, cd_offset=5 * 2**32,
                                         comment=b"hi", zip64=True)
    data = make_cdend(end)
    cdend = unpack_cdend(data[:consts.CD_END_STRUCT.size])
    assert cdend.total_entries == consts.ZIP_FILECOUNT_LIMIT
    assert cdend.cd_offset == consts.ZIP64_LIMIT
    assert cdend.cd_size == 100
    assert data.endswith(b"hi")


def test_unicode_path_extra():
    unicode_name = "ünïcode.txt".encode("utf-8")
    raw = b"unicode.txt"
    good = ExtraField(consts.EXTRA_UNICODE_PATH, b"\x01" + struct.pack("<L", zlib.crc32(raw)) + unicode_name)
    stale = ExtraField(consts.EXTRA_UNICODE_PATH, b"\x01" + struct.pack("<L", 0) + unicode_name)
    assert EntryHeader(name=raw, extra=(good,)).filename == "ünïcode.txt"
    assert EntryHeader(name=raw, extra=(stale,)).filename == "unicode.txt"


def test_cp437_name():
    assert EntryHeader(name=b"caf\x82").filename == "café"


def test_unix_mode_only_for_unix_hosts():
    header = EntryHeader(name=b"x", external_attr=0o100755 << 16)
    assert header.unix_mode == 0o100755
    assert header._replace(system=consts.SYSTEM_MSDOS).unix_mode is None


def test_dos_datetime():
    dostime, dosdate = dos_datetime((2021, 6, 15, 13, 45, 58))
    assert dos_to_tuple(dostime, dosdate) == (2021, 6, 15, 13, 45, 58)
    assert dos_datetime((1970, 1, 1, 0, 0, 0)) == (0, DOS_EPOCH_DATE)
    header = EntryHeader(name=b"x", mod_time=dostime, mod_date=dosdate)
    assert header.date_time == (2021, 6, 15, 13, 45, 58)
    assert header.last_modified.year == 2021


def test_impossible_dos_date_is_clamped():
    # Feb 30 2021, 25:61:62
    header = EntryHeader(name=b"x", mod_time=(25 << 11) | (61 << 5) | 31, mod_date=(41 << 9) | (2 << 5) | 30)
    assert header.date_time == (2021, 2, 30, 25, 61, 62)
    assert header.last_modified.timetuple()[:6] == (2021, 2, 28, 23, 59, 59)
    # month 13, day 0
    header = EntryHeader(name=b"x", mod_date=(44 << 9) | (13 << 5))
    assert header.last_modified.timetuple()[:3] == (2024, 12, 1)


def test_offset_tracker():
    tracker = zipcodec.OffsetTracker()
    assert tracker.advance(10) == 10
    with pytest.raises(ValueError):
        tracker.advance(-1)
    tracker.rebase(100)
    assert tracker.offset == 100


def test_byte_source_offsets():
    async def run():
        source = ByteSource(b"0123456789", chunksize=3)
        assert await source.peek(5) == b"01234"
        assert source.offset == 0
        assert await source.read(4) == b"0123"
        assert source.offset == 4
        await source.skip(2)
        assert await source.read_exact(4) == b"6789"
        assert await source.at_eof()
        with pytest.raises(zipcodec.TruncatedError):
            await source.read_exact(1)
        assert source.seekable
        assert await source.size() == 10
        assert await source.read_at(2, 3) == b"234"
        assert source.offset == 5

    asyncio.run(run())


def test_byte_source_async_iterable_skips_empty_chunks():
    async def chunks():
        yield b"ab"
        yield b""
        yield b"cd"

    async def run():
        source = ByteSource(chunks())
        assert not source.seekable
        return await source.read(10), source.offset

    assert asyncio.run(run()) == (b"abcd", 4)


def test_async_file_like_sink():
    class AsyncSink:
        def __init__(self):
            self.data = b""
            self.drained = 0

        async def write(self, data):
            self.data += data

        async def drain(self):
            self.drained += 1

    async def run():
        sink = AsyncSink()
        async with zipcodec.AioZipWriter(sink) as zw:
            await zw.write_entry("a.txt", b"hello")
        return sink

    sink = asyncio.run(run())
    assert sink.data.startswith(consts.LF_MAGIC)
    assert sink.drained >= 3


def test_codec_registry():
    assert consts.COMPRESSION_STORE in supported_methods()
    assert method_name(consts.COMPRESSION_DEFLATE) == "deflate"
    assert method_name(1234) == "method 1234"
    with pytest.raises(zipcodec.UnsupportedCompressionError):
        get_codec(1234)


def test_stored_decoder_stops_at_size():
    decoder = StoredDecoder(3)
    assert decoder.decode(b"abcdef") == b"abc"
    assert decoder.eof
    assert decoder.unused_data == b"def"


@pytest.mark.parametrize("level", [1, 9])
def test_compression_levels(level):
    codec = get_codec(consts.COMPRESSION_DEFLATE)
    encoder = codec.encoder(level)
    data = encoder.encode(b"level " * 1000) + encoder.finish()
    assert zlib.decompress(data, -15) == b"level " * 1000


def test_lzma_without_end_marker_in_stream():
    async def run():
        out = io.BytesIO()
        async with zipcodec.AioZipWriter(out, compression=consts.COMPRESSION_LZMA) as zw:
            await zw.write_entry("l.txt", b"lzma data")
        return out.getvalue()

    data = asyncio.run(run())
    head = unpack_local_header(data[:consts.LF_STRUCT.size])
    assert head.flags & consts.LZMA_EOS_FLAG
    assert head.version == consts.LZMA_VERSION
    # clear the end-of-stream flag in the local header only
    data = data[:6] + struct.pack("<H", head.flags & ~consts.LZMA_EOS_FLAG) + data[8:]

    async def read():
        async with zipcodec.AioZipReader(io.BytesIO(data), mode=zipcodec.AccessMode.SEQUENTIAL) as zr:
            async for entry in zr.entries():
                await entry.read()

    with pytest.raises(zipcodec.UnsupportedFeatureError):
        asyncio.run(read())
