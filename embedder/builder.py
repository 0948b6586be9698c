"""
Bundle builder that turns an installed runtime into a relocatable, versioned bundle.

Steps:
- Runtime files are collected (config file, native libraries, assemblies).
- Everything is staged under Versions/A in a temporary sibling of the
  output directory.
- With compress enabled, assemblies are gzip-packed into lib/Assemblies.bin
  with a JSON index next to it and a C header in Headers/; otherwise they
  are copied and linked into lib/ by name.
- Versions/Current and the top-level aliases are created last, and the
  staged tree replaces the output directory only once everything succeeded.

Layout:
    <name>.framework/
        <name> -> Versions/Current/<name>
        Headers -> Versions/Current/Headers
        Resources -> Versions/Current/Resources
        Versions/
            Current -> A
            A/
                <name> -> lib/libmonosgen-2.0.dylib
                Headers/Assemblies.h
                Resources/Info.plist
                etc/mono/4.5/machine.config
                lib/...
"""

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from embedder.additions.bundle import BLOB_FILENAME, HEADER_FILENAME, INDEX_FILENAME
from embedder.errors import BuildError, DuplicateAssetError
from embedder.utils.artifacts import publish_artifacts
from embedder.utils.collector import (
    DEFAULT_LAYOUT,
    CollectedFile,
    RuntimeLayout,
    blacklist_predicate,
    collect_runtime_files,
)
from embedder.utils.packer_gzip import GZIP_LEVEL, PackResult, pack_sources, validate_level

logger = logging.getLogger(__name__)

VERSION_NAME = 'A'

_INFO_PLIST_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleExecutable</key>
    <string>Versions/Current/{main_library}</string>
    <key>CFBundleIdentifier</key>
    <string>{identifier}</string>
    <key>CFBundleInfoDictionaryVersion</key>
    <string>6.0</string>
    <key>CFBundleName</key>
    <string>{name}</string>
    <key>CFBundlePackageType</key>
    <string>FMWK</string>
    <key>CFBundleShortVersionString</key>
    <string>1.0</string>
    <key>CFBundleVersion</key>
    <string>1</string>
</dict>
</plist>
"""


@dataclass(frozen=True)
class BuildOptions:
    """Bundle build configuration."""
    compress: bool = False  # Pack assemblies into one blob instead of copying them
    level: int = GZIP_LEVEL
    max_workers: Optional[int] = 1  # None = CPU count
    blacklist: Tuple[str, ...] = ()  # Case-insensitive name fragments of assemblies to leave out
    layout: RuntimeLayout = DEFAULT_LAYOUT
    bundle_name: str = 'Mono'  # Also the name of the main binary alias
    bundle_identifier: str = 'org.mono-project.Mono'
    main_library: str = 'lib/libmonosgen-2.0.dylib'
    # (from, to) pairs relative to Versions/A, moved after copying
    relocations: Tuple[Tuple[str, str], ...] = field(
        default=(('lib/libmono-native-compat.0.dylib', 'lib/mono/4.5/libSystem.Native.dylib'),)
    )


@dataclass(frozen=True)
class BuildResult:
    """Summary of a finished build."""
    bundle_path: str
    copied_files: int  # Files copied as-is
    packed: Optional[PackResult]  # None when assemblies were not packed


def build_bundle(runtime_root: str, output_dir: str, options: BuildOptions = BuildOptions()) -> BuildResult:
    """
    Build a bundle directory from an installed runtime.

    Args:
        runtime_root: Root of the installed runtime (its Versions/Current)
        output_dir: Bundle directory to create or replace
        options: Build configuration

    Returns:
        BuildResult for the published bundle.

    Raises:
        SourceReadError: If a runtime file is missing or unreadable.
        DuplicateAssetError: If two assemblies share a base name.
        BuildError: If the bundle tree cannot be written.
    """
    validate_level(options.level)
    if not os.path.isdir(runtime_root):
        raise BuildError(f"Runtime path does not exist at {runtime_root}")

    start_time = time.perf_counter()
    logger.info(f"Runtime: {runtime_root}")
    logger.info(f"Output: {output_dir}")
    logger.info(f"Compress: {options.compress}, blacklist: {list(options.blacklist)}")

    files = collect_runtime_files(
        runtime_root,
        layout=options.layout,
        exclude=blacklist_predicate(options.blacklist),
    )

    output_dir = os.path.abspath(output_dir)
    parent = os.path.dirname(output_dir)
    os.makedirs(parent, exist_ok=True)
    staging = tempfile.mkdtemp(prefix=f".{os.path.basename(output_dir)}.", dir=parent)

    try:
        result = _stage_bundle(staging, files, options)
        _publish_tree(staging, output_dir)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    elapsed = time.perf_counter() - start_time
    logger.info(f"Created bundle at {output_dir} in {elapsed:.2f}s")
    return BuildResult(bundle_path=output_dir, copied_files=result.copied_files, packed=result.packed)


def _stage_bundle(staging: str, files: List[CollectedFile], options: BuildOptions) -> BuildResult:
    """Write the complete bundle tree into an empty staging directory."""
    version_dir = os.path.join(staging, 'Versions', VERSION_NAME)
    headers_dir = os.path.join(version_dir, 'Headers')
    resources_dir = os.path.join(version_dir, 'Resources')
    lib_dir = os.path.join(version_dir, 'lib')
    for directory in (headers_dir, resources_dir, lib_dir):
        _makedirs(directory)

    plist = _INFO_PLIST_TEMPLATE.format(
        main_library=options.main_library,
        identifier=options.bundle_identifier,
        name=options.bundle_name,
    )
    _write_text(os.path.join(resources_dir, 'Info.plist'), plist)

    to_pack: List[CollectedFile] = []
    copied = 0
    for item in files:
        if options.compress and item.is_assembly:
            to_pack.append(item)
            continue

        destination = os.path.join(version_dir, *item.relative_path.split('/'))
        logger.debug(f"  Copying {item.source_path}...")
        _copy_file(item.source_path, destination)
        copied += 1

        if item.is_assembly:
            _link_into_lib(lib_dir, destination, item.name)

    packed = None
    if to_pack:
        packed = pack_sources(
            [item.as_source() for item in to_pack],
            level=options.level,
            max_workers=options.max_workers,
        )
        publish_artifacts(
            packed.blob,
            packed.table,
            os.path.join(lib_dir, BLOB_FILENAME),
            [os.path.join(lib_dir, INDEX_FILENAME), os.path.join(headers_dir, HEADER_FILENAME)],
        )

    for src_rel, dst_rel in options.relocations:
        _relocate(version_dir, src_rel, dst_rel)

    _create_aliases(staging, options)
    return BuildResult(bundle_path=staging, copied_files=copied, packed=packed)


def _create_aliases(staging: str, options: BuildOptions) -> None:
    """Create the Current version alias and the top-level links."""
    links = [
        (os.path.join('Versions', 'Current'), VERSION_NAME),
        ('Headers', 'Versions/Current/Headers'),
        ('Resources', 'Versions/Current/Resources'),
        (os.path.join('Versions', VERSION_NAME, options.bundle_name), options.main_library),
        (options.bundle_name, f"Versions/Current/{options.bundle_name}"),
    ]
    for link_rel, target in links:
        _symlink(target, os.path.join(staging, link_rel))


def _link_into_lib(lib_dir: str, target: str, name: str) -> None:
    """
    Expose a copied assembly as lib/<name> through a relative link.

    Raises:
        DuplicateAssetError: If another assembly already claimed the name.
    """
    link_path = os.path.join(lib_dir, name)
    if os.path.lexists(link_path):
        raise DuplicateAssetError(f"Duplicate asset name: {name}")
    _symlink(os.path.relpath(target, lib_dir), link_path)


def _relocate(version_dir: str, src_rel: str, dst_rel: str) -> None:
    """Move a copied file to its final place inside Versions/A. Missing files are skipped."""
    src = os.path.join(version_dir, *src_rel.split('/'))
    if not os.path.isfile(src):
        return
    dst = os.path.join(version_dir, *dst_rel.split('/'))
    _makedirs(os.path.dirname(dst))
    try:
        os.replace(src, dst)
    except OSError as e:
        raise BuildError(f"Failed to move {src_rel} to {dst_rel}: {e}") from e


def _publish_tree(staging: str, output_dir: str) -> None:
    """Swap the staged tree into place, replacing any previous output."""
    backup = None
    if os.path.lexists(output_dir):
        backup = f"{staging}.old"
        os.rename(output_dir, backup)
    try:
        os.rename(staging, output_dir)
    except OSError as e:
        if backup is not None:
            os.rename(backup, output_dir)
        raise BuildError(f"Failed to publish bundle at {output_dir}: {e}") from e
    if backup is not None:
        if os.path.isdir(backup) and not os.path.islink(backup):
            shutil.rmtree(backup)
        else:
            os.unlink(backup)


def _makedirs(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise BuildError(f"Failed to create directory at {path}: {e}") from e


def _copy_file(src: str, dst: str) -> None:
    _makedirs(os.path.dirname(dst))
    try:
        shutil.copy2(src, dst)
    except OSError as e:
        raise BuildError(f"Failed to copy file from {src}: {e}") from e


def _symlink(target: str, link_path: str) -> None:
    try:
        os.symlink(target, link_path)
    except OSError as e:
        raise BuildError(f"Failed to create symlink for {target} at {link_path}: {e}") from e


def _write_text(path: str, text: str) -> None:
    try:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text)
    except OSError as e:
        raise BuildError(f"Failed to write {path}: {e}") from e
