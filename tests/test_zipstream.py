#!/usr/bin/env python3
import asyncio
import io
import os
import struct
import zipfile
import zlib

import pytest

import zipcodec
from zipcodec import consts


@pytest.fixture
def temp_files(tmp_path):
    files = []
    yield files
    for f in files:
        if os.path.exists(f):
            os.unlink(f)


def add_temp_file(files, directory, name, content):
    path = os.path.join(str(directory), name)
    with open(path, "w") as f:
        f.write(content)
    files.append(path)
    return path


def collect(zs):
    async def _collect():
        res = b""
        async for chunk in zs.stream():
            res += chunk
        return res
    return asyncio.run(_collect())


async def chunks_of(data, size=4):
    for pos in range(0, len(data), size):
        yield data[pos:pos + size]


def test_structs():
    assert zipfile.sizeEndCentDir == consts.CD_END_STRUCT.size
    assert zipfile.sizeCentralDir == consts.CDLF_STRUCT.size
    assert zipfile.sizeFileHeader == consts.LF_STRUCT.size
    assert zipfile.sizeEndCentDir64 == consts.CD_END_STRUCT64.size
    assert zipfile.sizeEndCentDir64Locator == consts.CD_LOC64_STRUCT.size
    assert consts.LF_MAGIC == zipfile.stringFileHeader
    assert consts.CDFH_MAGIC == zipfile.stringCentralDir
    assert consts.CD_END_MAGIC == zipfile.stringEndArchive
    assert consts.CD_END_MAGIC64 == zipfile.stringEndArchive64
    assert consts.CD_LOC64_MAGIC == zipfile.stringEndArchive64Locator


def test_empty_zip():
    expected = io.BytesIO()
    with zipfile.ZipFile(expected, 'w'):
        pass
    zs = zipcodec.AioZipStream([])
    assert collect(zs) == expected.getvalue()


def test_one_file_add(temp_files, tmp_path):
    first = add_temp_file(temp_files, tmp_path, "_tempik_1.txt", "foo baz bar")
    second = add_temp_file(temp_files, tmp_path, "_tempik_2.txt", "baz trololo something")

    zs = zipcodec.AioZipStream([
        {"file": first},
        {"file": second},
    ])
    res = collect(zs)

    assert res[:4] == zipfile.stringFileHeader
    assert res[4:6] == b"\x14\x00"  # version
    assert res[6:8] == b"\x08\x00"  # flags
    assert res[8:10] == b"\x00\x00"  # compression method
    assert res[14:18] == b"\x00\x00\x00\x00"  # crc is set to 0
    assert res[18:22] == b"\x00\x00\x00\x00"  # compressed size is 0
    assert res[22:26] == b"\x00\x00\x00\x00"  # uncompressed size is 0

    pos = res.find(consts.LF_MAGIC, 10)

    dd = res[pos-16:pos]
    assert dd[:4] == consts.DD_MAGIC

    crc = dd[4:8]
    crc2 = struct.pack(b"<L", zlib.crc32(b"foo baz bar"))
    assert crc == crc2
    assert dd[8:12] == b"\x0b\x00\x00\x00"
    assert dd[12:16] == b"\x0b\x00\x00\x00"

    endstruct = res[-consts.CD_END_STRUCT.size:]
    assert endstruct[:4] == consts.CD_END_MAGIC
    assert endstruct[8:10] == b"\x02\x00"  # two files in disc
    assert endstruct[10:12] == b"\x02\x00"  # two files total

    cdsize = struct.unpack("<L", endstruct[12:16])[0]
    cdpos = struct.unpack("<L", endstruct[16:20])[0]

    assert cdpos + cdsize == len(res) - consts.CD_END_STRUCT.size
    assert res[cdpos:cdpos+4] == consts.CDFH_MAGIC

    with zipfile.ZipFile(io.BytesIO(res)) as zf:
        assert zf.namelist() == ["_tempik_1.txt", "_tempik_2.txt"]
        assert zf.read("_tempik_2.txt") == b"baz trololo something"


def test_stream_source_with_compression():
    payload = b"streamed content " * 100
    zs = zipcodec.AioZipStream([
        {"stream": chunks_of(payload, 64), "name": "deflated.txt", "compression": "deflate"},
        {"stream": chunks_of(b"plain"), "name": "stored.txt"},
    ], chunksize=32)
    res = collect(zs)

    with zipfile.ZipFile(io.BytesIO(res)) as zf:
        infos = zf.infolist()
        assert [i.filename for i in infos] == ["deflated.txt", "stored.txt"]
        assert infos[0].compress_type == zipfile.ZIP_DEFLATED
        assert infos[1].compress_type == zipfile.ZIP_STORED
        assert zf.read("deflated.txt") == payload
        assert zf.read("stored.txt") == b"plain"


def test_missing_source():
    zs = zipcodec.AioZipStream([{"name": "nothing.txt"}])
    with pytest.raises(zipcodec.MissingSourceError):
        collect(zs)


def test_stream_source_needs_name():
    zs = zipcodec.AioZipStream([{"stream": chunks_of(b"data")}])
    with pytest.raises(zipcodec.MissingSourceError):
        collect(zs)


def test_unknown_compression():
    zs = zipcodec.AioZipStream([{"stream": chunks_of(b"data"), "name": "x", "compression": "shrink"}])
    with pytest.raises(zipcodec.UnsupportedCompressionError):
        collect(zs)


def test_zip64(temp_files, tmp_path):
    path = add_temp_file(temp_files, tmp_path, "small.txt", "This is temporary file.\n")

    zs = zipcodec.AioZipStream([
        {"file": path}
    ], zip64=True)
    res = collect(zs)

    # Verify that the ZIP uses ZIP64 structures
    assert res.find(consts.CD_END_MAGIC64) != -1  # ZIP64 EOCD record exists
    assert res.find(consts.CD_LOC64_MAGIC) != -1   # ZIP64 EOCD locator exists

    lf_header = res[:consts.LF_STRUCT.size]
    assert lf_header[:4] == consts.LF_MAGIC
    assert lf_header[4:6] == b"\x2d\x00"  # version 4.5
    # Verify that uncompressed and compressed sizes are 0xFFFFFFFF
    assert lf_header[18:22] == b'\xFF\xFF\xFF\xFF'  # comp_size
    assert lf_header[22:26] == b'\xFF\xFF\xFF\xFF'  # uncomp_size
    # ZIP64 extra field comes first after the name
    name_end = consts.LF_STRUCT.size + len("small.txt")
    assert res[name_end:name_end + 4] == b"\x01\x00\x10\x00"

    # 64-bit data descriptor
    dd_signature_index = res.find(consts.DD_MAGIC)
    dd = res[dd_signature_index:dd_signature_index + consts.DD_STRUCT64.size + 4]
    crc, comp_size, uncomp_size = consts.DD_STRUCT64.unpack(dd[4:])
    assert crc == zlib.crc32(b"This is temporary file.\n")
    assert comp_size == uncomp_size == 24

    eocd64_locator_index = res.find(consts.CD_LOC64_MAGIC)
    locator = consts.CD_LOC64_TUPLE._make(
        consts.CD_LOC64_STRUCT.unpack(res[eocd64_locator_index:eocd64_locator_index + consts.CD_LOC64_STRUCT.size])
    )
    assert locator.offset == res.find(consts.CD_END_MAGIC64)

    with zipfile.ZipFile(io.BytesIO(res)) as zf:
        assert zf.read("small.txt") == b"This is temporary file.\n"


def test_zip64_disabled_entry():
    async def run():
        writer = zipcodec.AioZipWriter(io.BytesIO(), zip64=False)
        with pytest.raises(zipcodec.Zip64RequiredError):
            await writer.start_entry("big.bin", zip64=True)
        await writer.close()
    asyncio.run(run())


if __name__ == '__main__':
    pytest.main()
