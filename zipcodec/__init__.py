from . import consts
from .aiozipstream import AioZipStream
from .base import (
    ChecksumError, EncryptedEntryError, ExtraFieldError, InconsistencyError, IoError,
    MissingSourceError, OffsetTracker, StructuralError, TruncatedError, UnsupportedCompressionError,
    UnsupportedFeatureError, UnsupportedSourceTypeError, UsageError, ValidationError,
    Zip64RequiredError, ZipError,
)
from .cdir import CentralDirectoryReader, CentralDirectoryWriter
from .compression import get_codec, register_codec, supported_methods
from .entry import CentralDirectory, DataDescriptor, EndOfCentralDirectory, EntryHeader, ExtraField
from .reader import AccessMode, AioZipReader
from .stream import EntryReader
from .streams import ByteSink, ByteSource
from .writer import AioZipWriter

version = "0.5"

__all__ = (
    "AioZipReader", "AioZipWriter", "AioZipStream", "AccessMode",
    "EntryReader", "CentralDirectoryReader", "CentralDirectoryWriter",
    "EntryHeader", "DataDescriptor", "EndOfCentralDirectory", "CentralDirectory", "ExtraField",
    "ByteSource", "ByteSink", "OffsetTracker",
    "get_codec", "register_codec", "supported_methods",
    "ZipError", "StructuralError", "TruncatedError", "ValidationError", "ChecksumError",
    "InconsistencyError", "ExtraFieldError", "UnsupportedFeatureError", "UnsupportedCompressionError",
    "EncryptedEntryError", "UsageError", "Zip64RequiredError", "MissingSourceError",
    "UnsupportedSourceTypeError", "IoError", "consts", "version",
)
