import asyncio
from concurrent import futures
from typing import Any


# Define custom exceptions
class ZipError(Exception):
    """Base class for exceptions in zipcodec."""

class StructuralError(ZipError):
    """Raised when the archive violates the ZIP container structure."""

class TruncatedError(StructuralError):
    """Raised when the source ends in the middle of a record."""

class ValidationError(ZipError):
    """Raised when an entry's contents or metadata fail validation."""

class ChecksumError(ValidationError):
    """Raised when a CRC32 or size does not match the decoded data."""

class InconsistencyError(ValidationError):
    """Raised when the local header, data descriptor and central directory disagree."""

class ExtraFieldError(ValidationError):
    """Raised when an extra field is malformed or contradicts its header."""

class UnsupportedFeatureError(ZipError):
    """Raised when an entry needs a feature this library does not provide."""

class UnsupportedCompressionError(UnsupportedFeatureError):
    """Raised when an unsupported compression method is specified."""

class EncryptedEntryError(UnsupportedFeatureError):
    """Raised when the body of an encrypted entry is requested."""

class UsageError(ZipError):
    """Raised when the API is called out of order."""

class Zip64RequiredError(UsageError):
    """Raised when ZIP64 mode is required but explicitly disabled."""

class MissingSourceError(UsageError):
    """Raised when no 'file' or 'stream' key is found in the data source."""

class UnsupportedSourceTypeError(UsageError):
    """Raised when an unknown source type is provided."""


# I/O failures of the underlying source or sink are never wrapped.
IoError = OSError


class OffsetTracker:
    """
    Running byte count of a reader or writer session.

    Every header, body, descriptor and directory byte consumed or produced is
    added here, so the value is always the absolute offset of the next byte in
    the archive.
    """

    __slots__ = ("_offset",)

    def __init__(self, start: int = 0) -> None:
        self._offset = start

    @property
    def offset(self) -> int:
        return self._offset

    def advance(self, value: int) -> int:
        if value < 0:
            raise ValueError("offset can only move forward")
        self._offset += value
        return self._offset

    def rebase(self, offset: int) -> None:
        """Move to an absolute position after the source was seeked."""
        self._offset = offset

    def __repr__(self) -> str:
        return f"OffsetTracker({self._offset})"


class ExecutorMixin:
    """
    Runs codec work on a private single thread, so the event loop stays free
    while data is (de)compressed.
    """

    __tpex: futures.ThreadPoolExecutor

    def __get_executor(self) -> futures.ThreadPoolExecutor:
        try:
            return self.__tpex
        except AttributeError:
            self.__tpex = futures.ThreadPoolExecutor(max_workers=1)
            return self.__tpex

    async def _execute_aio_task(self, task: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.__get_executor(), task, *args)

    def _shutdown_executor(self) -> None:
        try:
            tpex = self.__tpex
        except AttributeError:
            return
        del self.__tpex
        tpex.shutdown(wait=False)
