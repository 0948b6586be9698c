"""
Module for reading assemblies back out of a packed bundle.

Supports:
- Resolving one member by exact name, or all of them at once
- Loading the blob + index pair from explicit paths or from a bundle directory
  (Versions/Current/lib/Assemblies.bin next to Assemblies.json)
- Sync and async (aiofiles) loading

An AssetBundle is an ordinary value: whoever loads the bundle owns it and
passes it on. It is never mutated after construction, so any number of
threads can resolve from the same instance.
"""

import io
import logging
import os
from typing import Dict, List, Tuple, Union

import aiofiles

from embedder.utils.metadata import AssetRecord, MetadataTable
from embedder.utils.metadata_codec import codec_for_path, load_metadata
from embedder.utils.packer_gzip import decompress, decompress_all, lookup, slice_member

logger = logging.getLogger(__name__)

BLOB_FILENAME = 'Assemblies.bin'
INDEX_FILENAME = 'Assemblies.json'
HEADER_FILENAME = 'Assemblies.h'

PathType = Union[str, os.PathLike]


class AssetBundle:
    """
    A blob paired with the table it was packed with.

    Usage:
        bundle = load_bundle('lib/Assemblies.bin', 'lib/Assemblies.json')
        data = bundle.resolve('mscorlib.dll')
        everything = bundle.resolve_all()
    """

    def __init__(self, blob: bytes, table: MetadataTable, allow_raw: bool = False):
        """
        Args:
            blob: The packed blob
            table: The table generated together with this blob
            allow_raw: Return members without the gzip magic number unchanged
                       instead of rejecting them
        """
        self._blob = bytes(blob)
        self._table = table
        self._allow_raw = allow_raw

    @property
    def table(self) -> MetadataTable:
        return self._table

    @property
    def blob_size(self) -> int:
        return len(self._blob)

    def names(self) -> List[str]:
        """List member names in packing order."""
        return self._table.names()

    def exists(self, name: str) -> bool:
        """Check if a member exists in the bundle."""
        return name in self._table

    def record(self, name: str) -> AssetRecord:
        return lookup(self._table, name)

    def resolve(self, name: str) -> bytes:
        """
        Return the original bytes of one member.

        Raises:
            AssetNotFoundError: If no member has this name.
            IntegrityError: If the record points outside the blob.
            CorruptAssetError: If the member's gzip stream is invalid.
        """
        return decompress(self._blob, lookup(self._table, name), allow_raw=self._allow_raw)

    def resolve_all(self) -> Dict[str, bytes]:
        """Return every member, failing on the first bad one."""
        return decompress_all(self._blob, self._table, allow_raw=self._allow_raw)

    def open(self, name: str) -> io.BytesIO:
        """Open a member as a read-only file-like object."""
        return io.BytesIO(self.resolve(name))

    def verify(self) -> None:
        """
        Check that every record lies inside the blob.

        Raises:
            IntegrityError: On the first record that does not.
        """
        for record in self._table:
            slice_member(self._blob, record)

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, name: object) -> bool:
        return name in self._table

    def __repr__(self) -> str:
        return f"AssetBundle({len(self._table)} members, {len(self._blob)} bytes)"


def bundle_paths(bundle_root: PathType) -> Tuple[str, str]:
    """
    Locate the blob and its JSON index inside a bundle directory.

    Returns:
        (blob_path, index_path) under Versions/Current/lib with symlinks resolved.
    """
    lib_path = os.path.realpath(os.path.join(os.fspath(bundle_root), 'Versions', 'Current', 'lib'))
    return os.path.join(lib_path, BLOB_FILENAME), os.path.join(lib_path, INDEX_FILENAME)


def load_bundle(blob_path: PathType, metadata_path: PathType, allow_raw: bool = False) -> AssetBundle:
    """Load a blob and its metadata file (.json or .h) from disk."""
    table = load_metadata(metadata_path)
    with open(blob_path, 'rb') as f:
        blob = f.read()
    bundle = AssetBundle(blob, table, allow_raw=allow_raw)
    logger.info(f"Loaded bundle: {os.fspath(blob_path)} ({len(bundle)} members, {len(blob)} bytes)")
    return bundle


async def load_bundle_async(blob_path: PathType, metadata_path: PathType, allow_raw: bool = False) -> AssetBundle:
    """Async variant of load_bundle()."""
    async with aiofiles.open(metadata_path, 'r', encoding='utf-8') as f:
        text = await f.read()
    table = codec_for_path(metadata_path).parse(text)

    async with aiofiles.open(blob_path, 'rb') as f:
        blob = await f.read()

    bundle = AssetBundle(blob, table, allow_raw=allow_raw)
    logger.info(f"Loaded bundle: {os.fspath(blob_path)} ({len(bundle)} members, {len(blob)} bytes)")
    return bundle


def open_bundle(bundle_root: PathType, allow_raw: bool = False) -> AssetBundle:
    """Load the packed assemblies of a bundle directory built by build_bundle()."""
    blob_path, index_path = bundle_paths(bundle_root)
    return load_bundle(blob_path, index_path, allow_raw=allow_raw)
