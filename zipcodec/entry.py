#
# Entry metadata model
#
# One EntryHeader type describes an archive member, whether it was parsed from
# a local file header, a central directory header, or is about to be written.
#
import calendar
import datetime
import logging
import struct
import time
import zlib
from typing import NamedTuple, Optional, Tuple

from . import consts
from .base import ExtraFieldError

__log__ = logging.getLogger(__name__)

DOS_EPOCH_DATE: int = (0 << 9) | (1 << 5) | 1     # 1980-01-01


class ExtraField(NamedTuple):
    id: int
    data: bytes


class EntryHeader(NamedTuple):
    """
    Metadata of one archive member.

    ``offset`` is the absolute position of the entry's local file header.
    Sizes and CRC are either final, or placeholders when ``deferred`` is set
    and a data descriptor follows the entry data.
    """
    name: bytes
    method: int = consts.COMPRESSION_STORE
    flags: int = 0
    crc: int = 0
    compressed_size: int = 0
    uncompressed_size: int = 0
    mod_time: int = 0
    mod_date: int = DOS_EPOCH_DATE
    extra: Tuple[ExtraField, ...] = ()
    comment: bytes = b""
    version: int = consts.ZIP32_VERSION
    system: int = consts.SYSTEM_UNIX
    version_needed: int = consts.ZIP32_VERSION
    internal_attr: int = 0
    external_attr: int = 0
    offset: int = 0
    disk_start: int = 0

    @property
    def deferred(self) -> bool:
        """Sizes and CRC live in a data descriptor after the entry data."""
        return bool(self.flags & consts.DATA_DESCRIPTOR_FLAG)

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & consts.ENCRYPTED_FLAG)

    @property
    def utf8(self) -> bool:
        return bool(self.flags & consts.UTF8_FLAG)

    @property
    def filename(self) -> str:
        unicode_path = self.get_extra(consts.EXTRA_UNICODE_PATH)
        if unicode_path is not None and len(unicode_path) > 5 and unicode_path[0] == 1:
            crc, = struct.unpack("<L", unicode_path[1:5])
            if crc == zlib.crc32(self.name):
                return unicode_path[5:].decode("utf-8")
        return self.name.decode("utf-8" if self.utf8 else "cp437")

    @property
    def is_dir(self) -> bool:
        return self.name.endswith(b"/")

    @property
    def zip64(self) -> bool:
        return self.get_extra(consts.EXTRA_ZIP64) is not None

    @property
    def unix_mode(self) -> Optional[int]:
        """Permission and type bits, for entries made on a Unix host."""
        if self.system != consts.SYSTEM_UNIX:
            return None
        return (self.external_attr >> 16) & 0xffff

    @property
    def date_time(self) -> Tuple[int, int, int, int, int, int]:
        return dos_to_tuple(self.mod_time, self.mod_date)

    @property
    def mtime(self) -> Optional[int]:
        """Modification time from the extended timestamp field, if present."""
        data = self.get_extra(consts.EXTRA_TIMESTAMP)
        if data is None or not data[0] & 0x1:
            return None
        return struct.unpack("<l", data[1:5])[0]

    @property
    def last_modified(self) -> datetime.datetime:
        mtime = self.mtime
        if mtime is not None:
            return datetime.datetime.fromtimestamp(mtime, datetime.timezone.utc)
        year, month, day, hour, minute, second = self.date_time
        # DOS fields can hold dates that do not exist, such as Feb 30
        month = min(max(month, 1), 12)
        day = min(max(day, 1), calendar.monthrange(year, month)[1])
        return datetime.datetime(year, month, day, min(hour, 23), min(minute, 59), min(second, 59))

    def get_extra(self, field_id: int) -> Optional[bytes]:
        for field in self.extra:
            if field.id == field_id:
                return field.data
        return None

    def without_extra(self, field_id: int) -> Tuple[ExtraField, ...]:
        return tuple(field for field in self.extra if field.id != field_id)


class DataDescriptor(NamedTuple):
    crc: int
    compressed_size: int
    uncompressed_size: int
    signed: bool = True     # preceded by the optional signature


class EndOfCentralDirectory(NamedTuple):
    entry_count: int
    cd_size: int
    cd_offset: int
    comment: bytes = b""
    disk_num: int = 0
    disk_cdstart: int = 0
    disk_entries: int = 0
    zip64: bool = False


class CentralDirectory(NamedTuple):
    entries: Tuple[EntryHeader, ...]
    end: EndOfCentralDirectory

    def __len__(self) -> int:
        return len(self.entries)

    def names(self) -> Tuple[str, ...]:
        return tuple(entry.filename for entry in self.entries)

    def find(self, name: str) -> Optional[EntryHeader]:
        for entry in self.entries:
            if entry.filename == name:
                return entry
        return None


def dos_datetime(dt: Optional[Tuple[int, ...]] = None) -> Tuple[int, int]:
    """
    Convert a ``(year, month, day, hour, minute, second)`` tuple to DOS time.

    Args:
        dt: Date and time; the current local time when omitted.

    Returns:
        ``(dostime, dosdate)``. Dates before 1980 are clamped to the DOS epoch.
    """
    if dt is None:
        dt = time.localtime()
    if dt[0] < 1980:
        return 0, DOS_EPOCH_DATE
    dosdate = ((min(dt[0], 2107) - 1980) << 9 | dt[1] << 5 | dt[2]) & 0xffff
    dostime = (dt[3] << 11 | dt[4] << 5 | (dt[5] // 2)) & 0xffff
    return dostime, dosdate


def dos_to_tuple(dostime: int, dosdate: int) -> Tuple[int, int, int, int, int, int]:
    return (
        ((dosdate >> 9) & 0x7f) + 1980,
        (dosdate >> 5) & 0xf,
        dosdate & 0x1f,
        (dostime >> 11) & 0x1f,
        (dostime >> 5) & 0x3f,
        (dostime & 0x1f) * 2,
    )


# extra fields
def parse_extra_fields(data: bytes) -> Tuple[ExtraField, ...]:
    """
    Split a raw extra block into fields.

    Raises:
        ExtraFieldError: If a field's declared length overruns the block, a
            field id repeats, or a known field is too short.
    """
    fields = []
    seen = set()
    pos = 0
    while pos + consts.EXTRA_STRUCT.size <= len(data):
        head = consts.EXTRA_TUPLE._make(consts.EXTRA_STRUCT.unpack_from(data, pos))
        pos += consts.EXTRA_STRUCT.size
        if pos + head.size > len(data):
            raise ExtraFieldError(
                f"Extra field 0x{head.signature:04x} declares {head.size} bytes, "
                f"only {len(data) - pos} available."
            )
        if head.signature in seen:
            raise ExtraFieldError(f"Duplicate extra field 0x{head.signature:04x}.")
        seen.add(head.signature)
        field = ExtraField(head.signature, data[pos:pos + head.size])
        _check_extra_field(field)
        fields.append(field)
        pos += head.size
    if pos != len(data):
        __log__.warning("Ignoring %d bytes of padding after extra fields", len(data) - pos)
    return tuple(fields)


def _check_extra_field(field: ExtraField) -> None:
    data = field.data
    if field.id == consts.EXTRA_TIMESTAMP:
        if not data:
            raise ExtraFieldError("Extended timestamp field is empty.")
        if data[0] & 0x1 and len(data) < 5:
            raise ExtraFieldError("Extended timestamp field is missing its modification time.")
    elif field.id == consts.EXTRA_UNIX_IDS:
        if len(data) < 3:
            raise ExtraFieldError("Unix UID/GID field is truncated.")
        uid_size = data[1]
        if len(data) < 3 + uid_size or len(data) < 3 + uid_size + data[2 + uid_size]:
            raise ExtraFieldError("Unix UID/GID field is truncated.")
    elif field.id in (consts.EXTRA_UNICODE_PATH, consts.EXTRA_UNICODE_COMMENT):
        if not data or (data[0] == 1 and len(data) < 5):
            raise ExtraFieldError(f"Info-ZIP unicode field 0x{field.id:04x} is truncated.")


def make_extra_field(signature: int, data: bytes) -> bytes:
    """
    Create extra field with signature and data
    """
    head = consts.EXTRA_TUPLE(signature=signature, size=len(data))
    return consts.EXTRA_STRUCT.pack(*head) + data


def make_extra_fields(fields: Tuple[ExtraField, ...]) -> bytes:
    return b"".join(make_extra_field(field.id, field.data) for field in fields)


def make_timestamp_extra(mtime: int) -> ExtraField:
    return ExtraField(consts.EXTRA_TIMESTAMP, struct.pack("<Bl", 0x1, mtime))


def resolve_zip64(fields: Tuple[ExtraField, ...], uncomp_size: int, comp_size: int,
                  offset: Optional[int] = None, disk_start: Optional[int] = None,
                  local: bool = False) -> Tuple[int, int, Optional[int], Optional[int]]:
    """
    Replace sentinel values of a header with those of its zip64 extra field.

    Only the fields whose 32-bit (16-bit for the disk) value is the sentinel are
    taken from the extra field, in the fixed order uncompressed size,
    compressed size, offset, disk.

    Raises:
        ExtraFieldError: If a sentinel has no zip64 extra to back it, or the
            extra field length does not match the sentinels present.
    """
    wanted = [
        ("uncompressed size", uncomp_size == consts.ZIP64_LIMIT, 8),
        ("compressed size", comp_size == consts.ZIP64_LIMIT, 8),
        ("local header offset", offset == consts.ZIP64_LIMIT, 8),
        ("disk number", disk_start == consts.ZIP_FILECOUNT_LIMIT, 4),
    ]
    data = None
    for field in fields:
        if field.id == consts.EXTRA_ZIP64:
            data = field.data
            break

    values = [uncomp_size, comp_size, offset, disk_start]
    if data is None:
        for label, is_sentinel, _ in wanted:
            if is_sentinel and label != "disk number":
                raise ExtraFieldError(f"Header {label} is 0xFFFFFFFF but no zip64 extra field is present.")
        return uncomp_size, comp_size, offset, disk_start

    # a local header carries both sizes together, or none at all
    if local and len(data) == consts.EXTRA_64_STRUCT.size:
        extra = consts.EXTRA_64_TUPLE._make(consts.EXTRA_64_STRUCT.unpack(data))
        if uncomp_size == consts.ZIP64_LIMIT or comp_size == consts.ZIP64_LIMIT:
            return (
                extra.uncomp_size if uncomp_size == consts.ZIP64_LIMIT else uncomp_size,
                extra.comp_size if comp_size == consts.ZIP64_LIMIT else comp_size,
                offset, disk_start,
            )
        if extra.uncomp_size == uncomp_size and extra.comp_size == comp_size:
            __log__.warning("Zip64 extra field repeats the 32-bit sizes of a local header")
            return uncomp_size, comp_size, offset, disk_start

    pos = 0
    for idx, (label, is_sentinel, size) in enumerate(wanted):
        if not is_sentinel:
            continue
        if pos + size > len(data):
            raise ExtraFieldError(f"Zip64 extra field is too short to hold the {label}.")
        values[idx], = struct.unpack_from("<Q" if size == 8 else "<L", data, pos)
        pos += size
    if pos != len(data):
        raise ExtraFieldError(f"Zip64 extra field holds {len(data)} bytes, {pos} expected.")
    return values[0], values[1], values[2], values[3]
