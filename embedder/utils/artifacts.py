"""
Publishing of pack outputs.

Every artifact is first written to a temporary file next to its
destination and only moved into place once all of them were written, so a
failed pack never leaves a half-written blob or a table that does not match
the blob beside it.
"""

import logging
import os
import tempfile
from typing import List, Optional, Sequence, Tuple, Union

from embedder.errors import IntegrityError
from embedder.utils.metadata import MetadataTable
from embedder.utils.metadata_codec import codec_for_path

logger = logging.getLogger(__name__)

PathType = Union[str, os.PathLike]


def _write_temp(path: str, data: bytes) -> str:
    directory = os.path.dirname(path) or '.'
    os.makedirs(directory, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix='.tmp', dir=directory)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        os.unlink(temp_path)
        raise
    return temp_path


def _swap_in(written: List[Tuple[str, str]]) -> None:
    """
    Move temp files onto their destinations, rolling back on failure.

    Each existing destination is first moved aside to a backup next to it.
    If any move fails, destinations already replaced get their backup back
    (or are removed if they did not exist before) and the remaining temp
    files are deleted.
    """
    done: List[Tuple[str, str, Optional[str]]] = []  # (temp_path, destination, backup)
    try:
        for temp_path, destination in written:
            backup = None
            if os.path.lexists(destination):
                backup = temp_path[:-len('.tmp')] + '.old'
                os.replace(destination, backup)
            done.append((temp_path, destination, backup))
            os.replace(temp_path, destination)
    except BaseException:
        for temp_path, destination, backup in reversed(done):
            if backup is not None:
                os.replace(backup, destination)
            elif not os.path.lexists(temp_path) and os.path.lexists(destination):
                os.unlink(destination)
        for temp_path, _ in written:
            if os.path.lexists(temp_path):
                os.unlink(temp_path)
        raise

    for _, _, backup in done:
        if backup is not None:
            os.unlink(backup)


def publish_files(files: Sequence[Tuple[PathType, bytes]]) -> None:
    """
    Write several files so that either all of them are replaced or none is.

    All contents are written to temp files first. Only then are the
    destinations swapped in, and a failed swap restores the files that
    were already replaced, so the set on disk always stays consistent.

    Args:
        files: (destination path, content) pairs
    """
    written: List[Tuple[str, str]] = []  # (temp_path, destination)
    try:
        for path, data in files:
            path = os.fspath(path)
            written.append((_write_temp(path, data), path))
    except BaseException:
        for temp_path, _ in written:
            os.unlink(temp_path)
        raise

    _swap_in(written)
    for _, destination in written:
        logger.debug(f"  Wrote {destination} ({os.path.getsize(destination)} bytes)")


def publish_artifacts(
    blob: bytes,
    table: MetadataTable,
    blob_path: PathType,
    metadata_paths: Sequence[PathType],
) -> None:
    """
    Write a blob and its metadata file(s).

    The metadata format of each path is chosen from its extension (.json / .h).

    Raises:
        IntegrityError: If the table does not describe exactly this blob.
    """
    if table.blob_size != len(blob):
        raise IntegrityError(f"Table covers {table.blob_size} bytes but the blob has {len(blob)}")
    table.check_contiguous()

    files: List[Tuple[PathType, bytes]] = []
    for metadata_path in metadata_paths:
        rendered = codec_for_path(metadata_path).render(table)
        files.append((metadata_path, rendered.encode('utf-8')))
    files.append((blob_path, blob))
    publish_files(files)
    logger.info(f"Published {os.fspath(blob_path)} ({len(blob)} bytes, {len(table)} members)")
