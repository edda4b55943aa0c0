#
# ZIP File streaming
# based on official ZIP File Format Specification version 6.3.4
# https://pkware.cachefly.net/webdocs/casestudies/APPNOTE.TXT
#
import os
from typing import Any, AsyncGenerator, Dict, List, Optional, Union

import aiofiles

from . import consts
from .base import MissingSourceError, UnsupportedSourceTypeError
from .compression import method_by_name
from .writer import AioZipWriter

__all__ = ("AioZipStream",)


class _ChunkCollector:
    """Sink that keeps written chunks until they are handed out."""

    def __init__(self) -> None:
        self._chunks: List[bytes] = []

    def write(self, data: bytes) -> None:
        self._chunks.append(data)

    def pop(self) -> List[bytes]:
        chunks, self._chunks = self._chunks, []
        return chunks


class AioZipStream:
    """
    Asynchronous ZIP file streaming

    Args:
        files: Sources, each a dict with a ``file`` path or a ``stream`` async
            iterable of bytes, an optional ``name``, and an optional
            ``compression`` (method name such as ``"deflate"``, or id).
        chunksize: Size of chunks to read from files.
        zip64: Use ZIP64 format always (True), never (False) or when needed (None).
    """

    def __init__(self, files: Optional[List[Dict[str, Any]]] = None, chunksize: int = 1024,
                 zip64: Optional[bool] = None) -> None:
        self._source_of_files = files or []
        self.chunksize = chunksize
        self.zip64 = zip64

    def _create_file_struct(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Creates a file structure with metadata and data source.

        Raises:
            MissingSourceError: If neither 'file' nor 'stream' are provided.
            UnsupportedCompressionError: If an unsupported compression method is specified.
        """
        file_struct: Dict[str, Any] = {"zip64": None, "mtime": None}
        if 'file' in data:
            stats = os.stat(data['file'])
            if stats.st_size >= consts.ZIP64_LIMIT:
                file_struct['zip64'] = True
            file_struct['mtime'] = stats.st_mtime
            file_struct['src'] = data['file']
            file_struct['stype'] = 'f'
        elif 'stream' in data:
            file_struct['src'] = data['stream']
            file_struct['stype'] = 's'
        else:
            raise MissingSourceError("No 'file' or 'stream' key found in data source.")

        cmpr = data.get('compression', None)
        if cmpr is None:
            file_struct['cmpr_id'] = consts.COMPRESSION_STORE
        elif isinstance(cmpr, int):
            file_struct['cmpr_id'] = cmpr
        else:
            file_struct['cmpr_id'] = method_by_name(cmpr)

        if 'name' in data:
            file_struct['fname'] = data['name']
        elif 'file' in data:
            file_struct['fname'] = os.path.basename(data['file'])
        else:
            raise MissingSourceError("A 'stream' source needs a 'name'.")
        return file_struct

    async def data_generator(self, src: Union[str, AsyncGenerator[bytes, None]], src_type: str) -> AsyncGenerator[bytes, None]:
        if src_type == 's':
            async for chunk in src:
                yield chunk
        elif src_type == 'f':
            async with aiofiles.open(src, "rb") as fh:
                while True:
                    part = await fh.read(self.chunksize)
                    if not part:
                        break
                    yield part
        else:
            raise UnsupportedSourceTypeError(f"Unknown source type: {src_type}")

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """Yield the archive, entry by entry, as it is produced."""
        collector = _ChunkCollector()
        writer = AioZipWriter(collector, zip64=self.zip64, chunksize=self.chunksize)
        try:
            for source in self._source_of_files:
                file_struct = self._create_file_struct(source)
                await writer.start_entry(
                    file_struct['fname'],
                    compression=file_struct['cmpr_id'],
                    mtime=file_struct['mtime'],
                    zip64=file_struct['zip64'],
                )
                async for part in self.data_generator(file_struct['src'], file_struct['stype']):
                    await writer.write(part)
                    for chunk in collector.pop():
                        yield chunk
                await writer.finish_entry()
                for chunk in collector.pop():
                    yield chunk
            await writer.finalize()
            for chunk in collector.pop():
                yield chunk
        finally:
            await writer.close()
