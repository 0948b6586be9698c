"""
Collects the files of an installed runtime that go into an embeddable bundle.

Which files are skipped is decided by a predicate supplied by the caller;
blacklist_predicate() builds the usual "case-insensitive substring" one.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from embedder.errors import SourceReadError
from embedder.utils.packer_gzip import AssetSource

logger = logging.getLogger(__name__)

# Files to ignore during collection (macOS, Windows, etc. junk files)
IGNORED_FILES = {
    '.DS_Store',
    '._.DS_Store',
    'Thumbs.db',
    'desktop.ini'
}

# File patterns to ignore (starting with)
IGNORED_PREFIXES = ('._',)

ExcludePredicate = Callable[[str], bool]


def should_ignore_file(filename: str) -> bool:
    """Check if a file is platform junk that never belongs in a bundle."""
    if filename in IGNORED_FILES:
        return True
    for prefix in IGNORED_PREFIXES:
        if filename.startswith(prefix):
            return True
    return False


def blacklist_predicate(patterns: Sequence[str]) -> ExcludePredicate:
    """
    Build an exclusion predicate from blacklist entries.

    A file is excluded if it is platform junk or if any entry occurs in its
    name, compared case-insensitively ('accessibility' excludes 'Accessibility.dll').
    """
    lowered = [pattern.lower() for pattern in patterns if pattern]

    def exclude(filename: str) -> bool:
        if should_ignore_file(filename):
            return True
        name = filename.lower()
        return any(pattern in name for pattern in lowered)

    return exclude


@dataclass(frozen=True)
class RuntimeLayout:
    """Where things live inside an installed runtime (paths relative to its root)."""
    config_files: Tuple[str, ...] = ('etc/mono/4.5/machine.config',)
    native_libraries: Tuple[str, ...] = (
        'lib/libmonosgen-2.0.dylib',
        'lib/libmono-native-compat.0.dylib',
        'lib/libMonoPosixHelper.dylib',
    )
    assembly_dir: str = 'lib/mono/4.5'
    # Relative to assembly_dir; picked up even though they sit in subfolders
    extra_assemblies: Tuple[str, ...] = ('Facades/netstandard.dll',)
    assembly_suffix: str = '.dll'

    def is_assembly(self, relative_path: str) -> bool:
        return relative_path.lower().endswith(self.assembly_suffix)


DEFAULT_LAYOUT = RuntimeLayout()


@dataclass(frozen=True)
class CollectedFile:
    """A runtime file to copy or pack."""
    relative_path: str  # POSIX path relative to the runtime root
    source_path: str  # Absolute path with symlinks resolved
    is_assembly: bool = field(default=False)

    @property
    def name(self) -> str:
        return self.relative_path.rsplit('/', 1)[-1]

    def as_source(self) -> AssetSource:
        """Pack input keyed by the file's base name."""
        return AssetSource(name=self.name, path=self.source_path)


def check_member_name(name: str, path: str) -> None:
    """
    Reject names that cannot be written to the metadata files.

    On POSIX, file names that are not valid UTF-8 come back from the OS
    with surrogate escapes in place of the undecodable bytes.

    Raises:
        SourceReadError: If the name does not encode as UTF-8.
    """
    try:
        name.encode('utf-8')
    except UnicodeEncodeError as e:
        raise SourceReadError(f"File name is not valid UTF-8: {os.fsencode(path)!r}") from e


def _required(runtime_root: str, relative_path: str) -> CollectedFile:
    full_path = os.path.realpath(os.path.join(runtime_root, relative_path))
    if not os.path.isfile(full_path):
        raise SourceReadError(f"Required runtime file not found: {os.path.join(runtime_root, relative_path)}")
    return CollectedFile(relative_path=relative_path, source_path=full_path)


def collect_runtime_files(
    runtime_root: str,
    layout: RuntimeLayout = DEFAULT_LAYOUT,
    exclude: Optional[ExcludePredicate] = None,
) -> List[CollectedFile]:
    """
    Collect the files to bundle from an installed runtime.

    Order: config files, native libraries, extra assemblies, then every
    assembly directly inside the assembly directory (sorted, hidden files
    and subdirectories skipped). The exclusion predicate only applies to
    assemblies; config files and native libraries are always required.

    Raises:
        SourceReadError: If a config file or native library is missing, or if an
            assembly name is not valid UTF-8.
    """
    exclude = exclude or should_ignore_file
    collected: List[CollectedFile] = []

    for relative_path in layout.config_files + layout.native_libraries:
        collected.append(_required(runtime_root, relative_path))

    seen = set()

    def add_assembly(relative_path: str) -> None:
        filename = relative_path.rsplit('/', 1)[-1]
        if not layout.is_assembly(filename) or exclude(filename):
            return
        if relative_path in seen:
            return
        full_path = os.path.join(runtime_root, relative_path)
        if not os.path.isfile(full_path):
            logger.warning(f"Assembly not found: {full_path}")
            return
        check_member_name(filename, full_path)
        seen.add(relative_path)
        collected.append(CollectedFile(
            relative_path=relative_path,
            source_path=os.path.realpath(full_path),
            is_assembly=True,
        ))

    for extra in layout.extra_assemblies:
        add_assembly(f"{layout.assembly_dir}/{extra}")

    assembly_dir = os.path.join(runtime_root, layout.assembly_dir)
    if os.path.isdir(assembly_dir):
        for filename in sorted(os.listdir(assembly_dir)):
            if filename.startswith('.'):
                continue
            if os.path.isdir(os.path.join(assembly_dir, filename)):
                continue
            add_assembly(f"{layout.assembly_dir}/{filename}")
    else:
        logger.warning(f"Assembly directory not found: {assembly_dir}")

    logger.info(f"Collected {len(collected)} files ({len(seen)} assemblies) from {runtime_root}")
    return collected


def sources_from_directory(folder_path: str, exclude: Optional[ExcludePredicate] = None) -> List[AssetSource]:
    """
    Turn every file below a folder into a pack input.

    Members are named by their POSIX path relative to the folder, in sorted walk order.

    Raises:
        SourceReadError: If a file name is not valid UTF-8.
    """
    exclude = exclude or should_ignore_file
    folder_path = folder_path.rstrip('/\\') or '.'
    sources: List[AssetSource] = []

    for root, dirs, files in os.walk(folder_path):
        dirs.sort()
        for filename in sorted(files):
            if exclude(filename):
                continue
            file_path = os.path.join(root, filename)
            rel_path = os.path.relpath(file_path, folder_path).replace(os.sep, '/')
            check_member_name(rel_path, file_path)
            sources.append(AssetSource(name=rel_path, path=os.path.realpath(file_path)))

    return sources
