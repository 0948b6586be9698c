"""
In-memory lookup table for a packed blob.

Every member of a blob is described by one AssetRecord: its name and the
byte range [offset, offset + size) holding its gzip stream. Records are
packed back to back in append order, so the first record starts at 0 and
each following record starts where the previous one ends.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from embedder.errors import AssetNotFoundError, DuplicateAssetError, IntegrityError


@dataclass(frozen=True)
class AssetRecord:
    """Location of one member inside a blob."""
    name: str
    offset: int  # Position of the compressed stream in the blob
    size: int  # Length of the compressed stream

    def __post_init__(self):
        if not isinstance(self.name, str):
            raise ValueError(f"Asset name must be a string, got {type(self.name).__name__}")
        if self.offset < 0 or self.size < 0:
            raise ValueError(f"Negative offset/size for {self.name!r}: {self.offset}, {self.size}")

    @property
    def end(self) -> int:
        """Offset one past the last byte of this member."""
        return self.offset + self.size

    def overlaps(self, other: 'AssetRecord') -> bool:
        """Check if the byte ranges of two records intersect."""
        return self.offset < other.end and other.offset < self.end


class MetadataTable:
    """
    Mapping from member name to AssetRecord for exactly one blob.

    Iteration order is insertion order, which is the packing order.
    Names are matched exactly (case-sensitive, no prefix matching).
    """

    def __init__(self, records: Optional[List[AssetRecord]] = None):
        self._records: Dict[str, AssetRecord] = {}
        for record in records or []:
            self.add(record)

    def add(self, record: AssetRecord) -> None:
        """Add a record. Duplicate names are rejected."""
        if record.name in self._records:
            raise DuplicateAssetError(f"Duplicate asset name: {record.name}")
        self._records[record.name] = record

    def lookup(self, name: str) -> AssetRecord:
        """
        Find the record for a member.

        Raises:
            AssetNotFoundError: If no member has exactly this name.
        """
        record = self._records.get(name)
        if record is None:
            raise AssetNotFoundError(f"Asset not found: {name}")
        return record

    def get(self, name: str) -> Optional[AssetRecord]:
        return self._records.get(name)

    def records(self) -> List[AssetRecord]:
        return list(self._records.values())

    def names(self) -> List[str]:
        return list(self._records.keys())

    @property
    def blob_size(self) -> int:
        """Sum of all record sizes (the length of a matching blob)."""
        return sum(record.size for record in self._records.values())

    def check_contiguous(self) -> None:
        """
        Verify that records are packed back to back starting at offset 0.

        Raises:
            IntegrityError: If a record starts anywhere other than the end of its predecessor.
        """
        expected = 0
        for record in self._records.values():
            if record.offset != expected:
                raise IntegrityError(
                    f"Record {record.name!r} starts at {record.offset}, expected {expected}"
                )
            expected = record.end

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[AssetRecord]:
        return iter(list(self._records.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MetadataTable):
            return NotImplemented
        return self._records == other._records

    def __repr__(self) -> str:
        return f"MetadataTable({len(self._records)} records, {self.blob_size} bytes)"
