"""
Asset packer that concatenates individually gzip-compressed files into one blob.

Every member gets its own RFC 1952 gzip stream, so any single member can be
inflated without touching the others. The blob itself has no header, footer
or length prefixes; it is only readable together with the MetadataTable built
while packing.

Format:
- Blob: gzip(member_0) || gzip(member_1) || ... || gzip(member_n-1)
- Table: name -> (offset, size), offsets counted from 0, no padding

Supports both sync and async packing with parallel compression in a
process pool. Appends into the blob always happen in source order, so the
output is byte-identical whatever the number of workers.
Also provides lookup/decompress helpers for reading members back.
"""

import asyncio
import logging
import os
import zlib
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import aiofiles

from embedder.errors import (
    CompressionError,
    CorruptAssetError,
    DuplicateAssetError,
    IntegrityError,
    SourceReadError,
)
from embedder.utils.metadata import AssetRecord, MetadataTable

logger = logging.getLogger(__name__)

# Gzip settings
GZIP_LEVEL = zlib.Z_DEFAULT_COMPRESSION  # Library default (6)
GZIP_WBITS = zlib.MAX_WBITS | 16  # Gzip container instead of raw zlib
GZIP_MAGIC = b'\x1f\x8b'

# Inflate output grows by this many bytes per step
INFLATE_CHUNK = 1 << 14

PathType = Union[str, os.PathLike]


def is_gzipped(data: bytes) -> bool:
    """Check for the gzip magic number."""
    return data[:2] == GZIP_MAGIC


def validate_level(level: int) -> None:
    """
    Validate a gzip compression level.

    Raises:
        CompressionError: If the level is outside -1..9.
    """
    if level < -1 or level > 9:
        raise CompressionError(f"Invalid compression level {level}; expected -1..9")


def compress_gzip(data: bytes, level: int = GZIP_LEVEL) -> bytes:
    """
    Compress data into a single gzip stream.

    Empty input still yields a complete stream (header + empty deflate block + trailer).

    Raises:
        CompressionError: If the encoder cannot be set up or finished.
    """
    validate_level(level)
    try:
        deflater = zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)
        return deflater.compress(data) + deflater.flush(zlib.Z_FINISH)
    except zlib.error as e:
        raise CompressionError(f"gzip compression failed: {e}") from e


def decompress_gzip(data: bytes) -> bytes:
    """
    Inflate a single gzip stream.

    The final size is not known in advance: output grows by INFLATE_CHUNK
    bytes at a time and ends up exactly as long as what the inflater produced
    when it reached the end-of-stream marker.

    Raises:
        CorruptAssetError: If the stream is truncated, fails its CRC/length
            check, is structurally invalid, or has trailing bytes.
    """
    inflater = zlib.decompressobj(GZIP_WBITS)
    output = bytearray()
    pending = data
    try:
        while not inflater.eof:
            chunk = inflater.decompress(pending, INFLATE_CHUNK)
            output.extend(chunk)
            tail = inflater.unconsumed_tail
            if not chunk and (not tail or tail == pending):
                break
            pending = tail
    except zlib.error as e:
        raise CorruptAssetError(f"Invalid gzip stream: {e}") from e

    if not inflater.eof:
        raise CorruptAssetError(
            f"Truncated gzip stream ({len(data)} bytes in, {len(output)} bytes out, no end marker)"
        )
    if inflater.unused_data:
        raise CorruptAssetError(f"{len(inflater.unused_data)} trailing bytes after gzip stream")
    return bytes(output)


def read_source(path: PathType) -> bytes:
    """
    Read the full content of a pack input.

    Raises:
        SourceReadError: If the file cannot be read.
    """
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise SourceReadError(f"Cannot read {os.fspath(path)}: {e.strerror or e}") from e


async def read_source_async(path: PathType) -> bytes:
    """Async variant of read_source()."""
    try:
        async with aiofiles.open(path, 'rb') as f:
            return await f.read()
    except OSError as e:
        raise SourceReadError(f"Cannot read {os.fspath(path)}: {e.strerror or e}") from e


def compress_member_task(args: Tuple[int, str, str, int]) -> Tuple[int, str, bytes, int]:
    """
    Read and compress one member. Used for parallel processing.
    Args: (index, name, file_path, level)
    Returns: (index, name, compressed_data, original_size)
    """
    index, name, file_path, level = args
    content = read_source(file_path)
    return index, name, compress_gzip(content, level), len(content)


# ============== PACKER ==============

@dataclass(frozen=True)
class AssetSource:
    """One pack input: the display name used as lookup key and the file to read."""
    name: str
    path: str

    @classmethod
    def from_path(cls, path: PathType) -> 'AssetSource':
        """Name the member after the file's base name."""
        path = os.fspath(path)
        return cls(name=os.path.basename(path), path=path)


@dataclass
class PackResult:
    """Output of a pack operation: the blob and its matching table."""
    blob: bytes
    table: MetadataTable
    original_size: int = 0  # Total uncompressed bytes

    @property
    def compressed_size(self) -> int:
        return len(self.blob)


class BlobPacker:
    """
    Accumulates compressed members into one growing buffer.

    Usage:
        packer = BlobPacker()
        packer.append('A.dll', data_a)
        packer.append('B.dll', data_b)
        result = packer.result()
    """

    def __init__(self, level: int = GZIP_LEVEL):
        validate_level(level)
        self._level = level
        self._buffer = bytearray()
        self._table = MetadataTable()
        self._original_size = 0

    def append(self, name: str, data: bytes) -> AssetRecord:
        """Compress data and append it as member `name`."""
        if name in self._table:
            raise DuplicateAssetError(f"Duplicate asset name: {name}")
        compressed = compress_gzip(data, self._level)
        return self.append_compressed(name, compressed, original_size=len(data))

    def append_compressed(self, name: str, payload: bytes, original_size: int = 0) -> AssetRecord:
        """Append an already gzip-compressed payload as member `name`."""
        record = AssetRecord(name=name, offset=len(self._buffer), size=len(payload))
        self._table.add(record)
        self._buffer.extend(payload)
        self._original_size += original_size
        return record

    def __len__(self) -> int:
        return len(self._table)

    def result(self) -> PackResult:
        return PackResult(blob=bytes(self._buffer), table=self._table, original_size=self._original_size)


def _check_unique_names(names: Iterable[str]) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise DuplicateAssetError(f"Duplicate asset name: {name}")
        seen.add(name)


def _log_member(index: int, total: int, name: str, original_size: int, final_size: int) -> None:
    ratio = (final_size / original_size * 100) if original_size > 0 else 0
    logger.debug(
        f"  [{index + 1}/{total}] Compressed: {name} ({original_size} -> {final_size} bytes, {ratio:.1f}%)"
    )


def _log_summary(result: PackResult) -> None:
    logger.info(f"Packed {len(result.table)} member(s) into {result.compressed_size} bytes")
    if result.original_size > 0:
        overall_ratio = result.compressed_size / result.original_size * 100
        logger.info(
            f"Compression: {result.original_size} -> {result.compressed_size} bytes ({overall_ratio:.1f}%)"
        )


def pack_members(members: Iterable[Tuple[str, bytes]], level: int = GZIP_LEVEL) -> PackResult:
    """
    Pack an ordered sequence of (name, raw bytes) pairs.

    Args:
        members: Members in packing order
        level: Gzip compression level (-1..9)

    Returns:
        PackResult with the blob and its table. Empty input gives an empty blob and table.
    """
    packer = BlobPacker(level)
    members = list(members)
    for index, (name, data) in enumerate(members):
        record = packer.append(name, data)
        _log_member(index, len(members), name, len(data), record.size)
    result = packer.result()
    _log_summary(result)
    return result


def pack_sources(
    sources: Sequence[AssetSource],
    level: int = GZIP_LEVEL,
    max_workers: Optional[int] = 1,
) -> PackResult:
    """
    Pack files into one blob (sync).

    Sources are packed in the given order. Any unreadable source aborts the
    whole operation; no partial result is returned.

    Args:
        sources: Files to pack, in packing order
        level: Gzip compression level (-1..9)
        max_workers: Parallel compression workers. 1 compresses inline,
                     None uses the CPU count.

    Returns:
        PackResult with the blob and its table.
    """
    validate_level(level)
    _check_unique_names(source.name for source in sources)

    if max_workers is None:
        max_workers = os.cpu_count() or 4

    if max_workers <= 1 or len(sources) <= 1:
        packer = BlobPacker(level)
        for index, source in enumerate(sources):
            content = read_source(source.path)
            record = packer.append(source.name, content)
            _log_member(index, len(sources), source.name, len(content), record.size)
        result = packer.result()
        _log_summary(result)
        return result

    logger.info(f"Compressing {len(sources)} files using {max_workers} workers (gzip level {level})...")

    tasks = [(index, source.name, os.fspath(source.path), level) for index, source in enumerate(sources)]
    compressed: Dict[int, Tuple[bytes, int]] = {}  # index -> (payload, original_size)

    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(compress_member_task, args) for args in tasks]
        try:
            for future in as_completed(futures):
                index, name, payload, original_size = future.result()
                compressed[index] = (payload, original_size)
                _log_member(len(compressed) - 1, len(tasks), name, original_size, len(payload))
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    # Appends stay in source order so offsets do not depend on completion order
    packer = BlobPacker(level)
    for index, source in enumerate(sources):
        payload, original_size = compressed[index]
        packer.append_compressed(source.name, payload, original_size=original_size)
    result = packer.result()
    _log_summary(result)
    return result


async def pack_sources_async(
    sources: Sequence[AssetSource],
    level: int = GZIP_LEVEL,
    max_workers: Optional[int] = None,
) -> PackResult:
    """
    Pack files into one blob (async).

    Sources are read with aiofiles and compressed in a process pool; the
    result is identical to pack_sources() for the same inputs.
    """
    validate_level(level)
    _check_unique_names(source.name for source in sources)

    if not sources:
        return PackResult(blob=b'', table=MetadataTable())

    if max_workers is None:
        max_workers = os.cpu_count() or 4

    logger.info(f"Compressing {len(sources)} files using {max_workers} workers (gzip level {level})...")

    loop = asyncio.get_running_loop()
    sizes: List[int] = []
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        pending = []
        for source in sources:
            content = await read_source_async(source.path)
            sizes.append(len(content))
            pending.append(loop.run_in_executor(executor, compress_gzip, content, level))
        payloads = await asyncio.gather(*pending)

    packer = BlobPacker(level)
    for index, (source, payload) in enumerate(zip(sources, payloads)):
        packer.append_compressed(source.name, payload, original_size=sizes[index])
        _log_member(index, len(sources), source.name, sizes[index], len(payload))
    result = packer.result()
    _log_summary(result)
    return result


# ============== LOCATOR / DECOMPRESSOR ==============

def lookup(table: MetadataTable, name: str) -> AssetRecord:
    """
    Find a member's record by exact, case-sensitive name.

    Raises:
        AssetNotFoundError: If the name is not in the table.
    """
    return table.lookup(name)


def slice_member(blob: bytes, record: AssetRecord) -> bytes:
    """
    Cut a member's compressed bytes out of the blob.

    Raises:
        IntegrityError: If the record's range is not inside the blob.
    """
    if record.end > len(blob):
        raise IntegrityError(
            f"Record {record.name!r} [{record.offset}, {record.end}) exceeds blob of {len(blob)} bytes"
        )
    return bytes(blob[record.offset:record.end])


def decompress(blob: bytes, record: AssetRecord, allow_raw: bool = False) -> bytes:
    """
    Recover the original bytes of one member.

    Args:
        blob: The blob the record was packed into
        record: Record from the blob's own table
        allow_raw: If True, a slice without the gzip magic number is returned
                   unchanged instead of being rejected.

    Raises:
        IntegrityError: If the record points outside the blob.
        CorruptAssetError: If the slice is not a valid gzip stream.
    """
    data = slice_member(blob, record)
    if not is_gzipped(data):
        if allow_raw:
            return data
        raise CorruptAssetError(f"Member {record.name!r} does not start with the gzip magic number")
    try:
        return decompress_gzip(data)
    except CorruptAssetError as e:
        raise CorruptAssetError(f"Member {record.name!r}: {e}") from e


def decompress_all(blob: bytes, table: MetadataTable, allow_raw: bool = False) -> Dict[str, bytes]:
    """
    Decompress every member of the table, in table order.

    Fails on the first bad member; no partial mapping is returned.
    """
    return {record.name: decompress(blob, record, allow_raw=allow_raw) for record in table}
