#
# ZIP record serialization
# based on official ZIP File Format Specification version 6.3.4
# https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT
#
# EntryHeader has two wire shapes, the local file header and the central
# directory header; each has a parse and a make function here.
#
from typing import Optional

from . import consts
from .base import StructuralError, UnsupportedFeatureError, ValidationError
from .entry import (
    DataDescriptor, EndOfCentralDirectory, EntryHeader,
    make_extra_field, make_extra_fields, parse_extra_fields, resolve_zip64,
)

__all__ = (
    "unpack_local_header", "parse_local_header", "make_local_file_header",
    "unpack_cdir_header", "parse_central_header", "make_cdir_file_header",
    "make_data_descriptor", "parse_data_descriptor", "data_descriptor_size",
    "unpack_cdend", "unpack_cdend64", "unpack_eocd64_locator", "combine_cdend",
    "make_cdend", "make_cdend64", "make_eocd64_locator", "needs_zip64", "cdend_needs_zip64",
)


def _check_signature(found: bytes, expected: bytes, what: str) -> None:
    if found != expected:
        raise StructuralError(f"Bad {what} signature {found!r}, expected {expected!r}.")


def _check_name(name: bytes, flags: int) -> None:
    if flags & consts.UTF8_FLAG:
        try:
            name.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"Entry name {name!r} is flagged UTF-8 but does not decode: {e}") from e


def needs_zip64(header: EntryHeader) -> bool:
    return (header.compressed_size >= consts.ZIP64_LIMIT
            or header.uncompressed_size >= consts.ZIP64_LIMIT
            or header.offset >= consts.ZIP64_LIMIT)


# local file header
def unpack_local_header(data: bytes) -> consts.FileHeader:
    """
    Unpack the fixed part of a local file header, signature included.

    Raises:
        StructuralError: If the signature is wrong.
    """
    head = consts.LF_TUPLE._make(consts.LF_STRUCT.unpack(data))
    _check_signature(head.signature, consts.LF_MAGIC, "local file header")
    return head


def parse_local_header(head: consts.FileHeader, name: bytes, extra: bytes, offset: int = 0) -> EntryHeader:
    """
    Build an EntryHeader from a local file header.

    Args:
        head: The unpacked fixed part.
        name: Raw file name bytes.
        extra: Raw extra field block.
        offset: Absolute offset of the header's signature.

    Raises:
        ValidationError: If the extra fields are malformed or a size sentinel
            has no zip64 extra field to back it.
    """
    _check_name(name, head.flags)
    fields = parse_extra_fields(extra)
    uncomp_size, comp_size, _, _ = resolve_zip64(fields, head.uncomp_size, head.comp_size, local=True)
    return EntryHeader(
        name=name,
        method=head.compression,
        flags=head.flags,
        crc=head.crc,
        compressed_size=comp_size,
        uncompressed_size=uncomp_size,
        mod_time=head.mod_time,
        mod_date=head.mod_date,
        extra=fields,
        version=head.version,
        system=consts.SYSTEM_MSDOS,
        version_needed=head.version,
        offset=offset,
    )


def make_zip64_local_extra(fsize: int, compsize: int) -> bytes:
    data = consts.EXTRA_64_TUPLE(uncomp_size=fsize, comp_size=compsize)
    return make_extra_field(consts.EXTRA_ZIP64, consts.EXTRA_64_STRUCT.pack(*data))


def make_local_file_header(header: EntryHeader, zip64: bool = False) -> bytes:
    """
    Create local file header

    Deferred entries get zero CRC and sizes. With ``zip64`` both sizes are set
    to the sentinel and carried in a zip64 extra field instead.
    """
    crc, comp_size, uncomp_size = header.crc, header.compressed_size, header.uncompressed_size
    if header.deferred:
        crc = comp_size = uncomp_size = 0
    extra = make_extra_fields(header.without_extra(consts.EXTRA_ZIP64))
    if zip64:
        extra = make_zip64_local_extra(uncomp_size, comp_size) + extra
        comp_size = uncomp_size = consts.ZIP64_LIMIT
    fields = {
        "signature": consts.LF_MAGIC,
        "version": max(header.version_needed, consts.ZIP64_VERSION if zip64 else 0),
        "flags": header.flags,
        "compression": header.method,
        "mod_time": header.mod_time,
        "mod_date": header.mod_date,
        "crc": crc,
        "uncomp_size": uncomp_size,
        "comp_size": comp_size,
        "fname_len": len(header.name),
        "extra_len": len(extra),
    }
    head = consts.LF_TUPLE(**fields)
    return consts.LF_STRUCT.pack(*head) + header.name + extra


# central directory file header
def unpack_cdir_header(data: bytes) -> consts.CdFileHeader:
    head = consts.CDLF_TUPLE._make(consts.CDLF_STRUCT.unpack(data))
    _check_signature(head.signature, consts.CDFH_MAGIC, "central directory header")
    return head


def parse_central_header(head: consts.CdFileHeader, name: bytes, extra: bytes, comment: bytes) -> EntryHeader:
    """
    Build an EntryHeader from a central directory header.

    Raises:
        ValidationError: If the extra fields are malformed or a sentinel
            field has no zip64 extra field to back it.
    """
    _check_name(name, head.flags)
    fields = parse_extra_fields(extra)
    uncomp_size, comp_size, offset, disk_start = resolve_zip64(
        fields, head.uncomp_size, head.comp_size, head.offset, head.disk_start
    )
    return EntryHeader(
        name=name,
        method=head.compression,
        flags=head.flags,
        crc=head.crc,
        compressed_size=comp_size,
        uncompressed_size=uncomp_size,
        mod_time=head.mod_time,
        mod_date=head.mod_date,
        extra=fields,
        comment=comment,
        version=head.version,
        system=head.system,
        version_needed=head.version_ndd,
        internal_attr=head.attrs_int,
        external_attr=head.attrs_ext,
        offset=offset,
        disk_start=disk_start,
    )


def make_cdir_file_header(header: EntryHeader, zip64: bool = False) -> bytes:
    """
    Create central directory file header
    According to the ZIP spec and the structures:
    version (low byte) and system (high byte) form "version made by".

    Each size or the offset that does not fit 32 bits (all of them when
    ``zip64`` is forced) is replaced by the sentinel and stored in a zip64
    extra field.
    """
    fields = {
        "signature": consts.CDFH_MAGIC,
        "version": header.version,
        "system": header.system,
        "version_ndd": header.version_needed,
        "flags": header.flags,
        "compression": header.method,
        "mod_time": header.mod_time,
        "mod_date": header.mod_date,
        "crc": header.crc,
        "comp_size": header.compressed_size,
        "uncomp_size": header.uncompressed_size,
        "fname_len": len(header.name),
        "extra_len": 0,
        "fcomm_len": len(header.comment),
        "disk_start": header.disk_start,
        "attrs_int": header.internal_attr,
        "attrs_ext": header.external_attr,
        "offset": header.offset,
    }
    z64extra = b""
    for key, value in (("uncomp_size", header.uncompressed_size),
                       ("comp_size", header.compressed_size),
                       ("offset", header.offset)):
        if zip64 or value >= consts.ZIP64_LIMIT:
            fields[key] = consts.ZIP64_LIMIT
            z64extra += value.to_bytes(8, "little")
    extra = make_extra_fields(header.without_extra(consts.EXTRA_ZIP64))
    if z64extra:
        extra = make_extra_field(consts.EXTRA_ZIP64, z64extra) + extra
        fields["version_ndd"] = max(fields["version_ndd"], consts.ZIP64_VERSION)
        fields["version"] = max(fields["version"], consts.ZIP64_VERSION)
    fields["extra_len"] = len(extra)

    cdfh = consts.CDLF_TUPLE(**fields)
    return consts.CDLF_STRUCT.pack(*cdfh) + header.name + extra + header.comment


# data descriptor
def data_descriptor_size(zip64: bool, signed: bool = True) -> int:
    size = consts.DD_STRUCT64.size if zip64 else consts.DD_STRUCT.size
    return size + len(consts.DD_MAGIC) if signed else size


def make_data_descriptor(crc: int, comp_size: int, uncomp_size: int,
                         zip64: bool = False, use_ddmagic: bool = True) -> bytes:
    """
    Create data descriptor

    Args:
        crc: CRC32 checksum of the file.
        comp_size: Compressed file size.
        uncomp_size: Original file size.
        zip64: Use 8-byte size fields.
        use_ddmagic: Prefix the optional signature.

    Returns:
        Data descriptor. (bytes)
    """
    descriptor = consts.DD_TUPLE(crc=crc & 0xffffffff, comp_size=comp_size, uncomp_size=uncomp_size)
    if zip64:
        descriptor = consts.DD_STRUCT64.pack(*descriptor)
    else:
        descriptor = consts.DD_STRUCT.pack(*descriptor)
    if use_ddmagic:
        descriptor = consts.DD_MAGIC + descriptor
    return descriptor


def parse_data_descriptor(data: bytes, zip64: bool = False) -> DataDescriptor:
    """Parse a data descriptor; ``data`` holds exactly one, with or without signature."""
    signed = data[:4] == consts.DD_MAGIC
    if signed:
        data = data[4:]
    struct_ = consts.DD_STRUCT64 if zip64 else consts.DD_STRUCT
    if len(data) != struct_.size:
        raise StructuralError(f"Data descriptor is {len(data)} bytes, expected {struct_.size}.")
    dd = consts.DD_TUPLE._make(struct_.unpack(data))
    return DataDescriptor(dd.crc, dd.comp_size, dd.uncomp_size, signed)


# end of central directory
def unpack_cdend(data: bytes) -> consts.CdEnd:
    head = consts.CD_END_TUPLE._make(consts.CD_END_STRUCT.unpack(data))
    _check_signature(head.signature, consts.CD_END_MAGIC, "end of central directory")
    return head


def unpack_cdend64(data: bytes) -> consts.CdEnd64:
    head = consts.CD_END_TUPLE64._make(consts.CD_END_STRUCT64.unpack(data))
    _check_signature(head.signature, consts.CD_END_MAGIC64, "zip64 end of central directory")
    return head


def unpack_eocd64_locator(data: bytes) -> consts.CdLocator64:
    head = consts.CD_LOC64_TUPLE._make(consts.CD_LOC64_STRUCT.unpack(data))
    _check_signature(head.signature, consts.CD_LOC64_MAGIC, "zip64 end of central directory locator")
    return head


def combine_cdend(cdend: consts.CdEnd, comment: bytes,
                  cdend64: Optional[consts.CdEnd64] = None) -> EndOfCentralDirectory:
    """
    Merge the EOCD record with its zip64 counterpart.

    Raises:
        UnsupportedFeatureError: For archives spanning several disks.
    """
    if cdend64 is not None:
        end = EndOfCentralDirectory(
            entry_count=cdend64.total_entries,
            cd_size=cdend64.cd_size,
            cd_offset=cdend64.cd_offset,
            comment=comment,
            disk_num=cdend64.disk_num,
            disk_cdstart=cdend64.disk_cdstart,
            disk_entries=cdend64.disk_entries,
            zip64=True,
        )
    else:
        end = EndOfCentralDirectory(
            entry_count=cdend.total_entries,
            cd_size=cdend.cd_size,
            cd_offset=cdend.cd_offset,
            comment=comment,
            disk_num=cdend.disk_num,
            disk_cdstart=cdend.disk_cdstart,
            disk_entries=cdend.disk_entries,
        )
    if end.disk_num != 0 or end.disk_cdstart != 0 or end.disk_entries != end.entry_count:
        raise UnsupportedFeatureError("Multi-disk archives are not supported.")
    return end


def cdend_needs_zip64(end: EndOfCentralDirectory) -> bool:
    return (end.entry_count >= consts.ZIP_FILECOUNT_LIMIT
            or end.cd_size >= consts.ZIP64_LIMIT
            or end.cd_offset >= consts.ZIP64_LIMIT)


def make_cdend(end: EndOfCentralDirectory) -> bytes:
    fields = {
        "signature": consts.CD_END_MAGIC,
        "disk_num": 0,
        "disk_cdstart": 0,
        "disk_entries": end.entry_count,
        "total_entries": end.entry_count,
        "cd_size": end.cd_size,
        "cd_offset": end.cd_offset,
        "comment_len": len(end.comment),
    }
    if end.zip64:
        fields["disk_entries"] = min(end.entry_count, consts.ZIP_FILECOUNT_LIMIT)
        fields["total_entries"] = min(end.entry_count, consts.ZIP_FILECOUNT_LIMIT)
        fields["cd_size"] = min(end.cd_size, consts.ZIP64_LIMIT)
        fields["cd_offset"] = min(end.cd_offset, consts.ZIP64_LIMIT)
    cdend = consts.CD_END_TUPLE(**fields)
    return consts.CD_END_STRUCT.pack(*cdend) + end.comment


def make_cdend64(end: EndOfCentralDirectory) -> bytes:
    """
    make zip64 end of central directory record
    """
    fields = {
        "signature": consts.CD_END_MAGIC64,
        "zip64_eocd_size": consts.CD_END_STRUCT64.size - 12,
        "version": consts.ZIP64_VERSION,
        "version_ndd": consts.ZIP64_VERSION,
        "disk_num": 0,
        "disk_cdstart": 0,
        "disk_entries": end.entry_count,
        "total_entries": end.entry_count,
        "cd_size": end.cd_size,
        "cd_offset": end.cd_offset,
    }
    cdend = consts.CD_END_TUPLE64(**fields)
    return consts.CD_END_STRUCT64.pack(*cdend)


def make_eocd64_locator(offset: int) -> bytes:
    fields = {
        "signature": consts.CD_LOC64_MAGIC,
        "disk_cdstart": 0,
        "offset": offset,
        "disk_count": 1,
    }
    locator = consts.CD_LOC64_TUPLE(**fields)
    return consts.CD_LOC64_STRUCT.pack(*locator)

