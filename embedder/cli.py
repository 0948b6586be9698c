"""
Command line interface for runtime-embedder.

Usage:
  runtime-embedder build --out <dir> [--runtime <path>] [--name Mono] [--compress] [--blacklist a,b]
  runtime-embedder pack <folder> -o <blob> --index <file.json|file.h> [--index ...] [--workers N]
  runtime-embedder unpack <blob> <index> <output_dir> [--allow-raw]
  runtime-embedder list <blob> <index>

Examples:
  runtime-embedder build --out build --compress --blacklist Accessibility
  runtime-embedder pack assemblies/ -o Assemblies.bin --index Assemblies.json --index Assemblies.h
  runtime-embedder unpack Assemblies.bin Assemblies.json unpacked/
"""

import argparse
import logging
import os
import sys
from typing import List, Optional, Tuple

from embedder.additions.bundle import load_bundle
from embedder.builder import BuildOptions, build_bundle
from embedder.errors import EmbedderError
from embedder.utils.artifacts import publish_artifacts, publish_files
from embedder.utils.collector import blacklist_predicate, sources_from_directory
from embedder.utils.packer_gzip import GZIP_LEVEL, pack_sources

DEFAULT_RUNTIME_PATH = '/Library/Frameworks/Mono.framework'

logger = logging.getLogger('embedder')


def _configure_logging(verbose: int, quiet: int) -> None:
    """
    Send the package's log output to stderr.

    Args:
        verbose: Number of -v flags (1+ shows per-member progress)
        quiet: Number of -q flags (1 hides progress, 2+ leaves only errors)
    """
    level = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter('%(message)s'))

    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()
    logger.addHandler(handler)


def _parse_list(value: str) -> Tuple[str, ...]:
    """Split a comma-separated option, dropping empty items."""
    return tuple(item.strip() for item in value.split(',') if item.strip())


def _resolve_runtime_root(path: str) -> str:
    """Use Versions/Current of a framework-style install when present."""
    root = os.path.expanduser(path)
    current = os.path.join(root, 'Versions', 'Current')
    if os.path.isdir(current):
        return current
    return root


def _add_logging_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Show per-file progress')
    parser.add_argument('-q', '--quiet', action='count', default=0,
                        help='Show less output (twice: errors only)')


def _add_pack_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--level', type=int, default=GZIP_LEVEL,
                        help='Gzip compression level, -1 (library default) to 9')
    parser.add_argument('--workers', type=int, default=None,
                        help='Number of parallel compression workers (default: CPU count)')


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='runtime-embedder',
        description='Repackage an installed runtime into an embeddable, versioned bundle',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    build = subparsers.add_parser('build', help='Build an embeddable bundle from an installed runtime')
    build.add_argument('--out', required=True, help='Directory the bundle is created in')
    build.add_argument('--runtime', default=DEFAULT_RUNTIME_PATH,
                       help=f'Installed runtime to repackage (default: {DEFAULT_RUNTIME_PATH})')
    build.add_argument('--name', default='Mono', help='Bundle name (creates <out>/<name>.framework)')
    build.add_argument('--blacklist', type=_parse_list, default=(),
                       help='Comma-separated assembly name fragments to leave out (case-insensitive)')
    build.add_argument('--compress', action='store_true',
                       help='Pack assemblies into a single gzip blob with a lookup table')
    _add_pack_flags(build)
    _add_logging_flags(build)

    pack = subparsers.add_parser('pack', help='Pack every file below a folder into a blob')
    pack.add_argument('folder', help='Folder to pack')
    pack.add_argument('-o', '--output', required=True, help='Blob file to write')
    pack.add_argument('--index', action='append', required=True,
                      help='Metadata file to write (.json or .h); may be given more than once')
    pack.add_argument('--exclude', type=_parse_list, default=(),
                      help='Comma-separated file name fragments to leave out (case-insensitive)')
    _add_pack_flags(pack)
    _add_logging_flags(pack)

    unpack = subparsers.add_parser('unpack', help='Extract every member of a blob to a folder')
    unpack.add_argument('blob', help='Blob file')
    unpack.add_argument('index', help='Metadata file (.json or .h) generated with the blob')
    unpack.add_argument('output_dir', help='Folder to extract into')
    unpack.add_argument('--allow-raw', action='store_true',
                        help='Pass through members that are not gzip-compressed instead of failing')
    _add_logging_flags(unpack)

    listing = subparsers.add_parser('list', help='List the members of a blob')
    listing.add_argument('blob', help='Blob file')
    listing.add_argument('index', help='Metadata file (.json or .h) generated with the blob')
    _add_logging_flags(listing)

    return parser


def run_build(args: argparse.Namespace) -> None:
    runtime_root = _resolve_runtime_root(args.runtime)
    output_dir = os.path.join(os.path.expanduser(args.out), f"{args.name}.framework")
    options = BuildOptions(
        compress=args.compress,
        level=args.level,
        max_workers=args.workers,
        blacklist=args.blacklist,
        bundle_name=args.name,
    )
    build_bundle(runtime_root, output_dir, options)


def run_pack(args: argparse.Namespace) -> None:
    if not os.path.isdir(args.folder):
        raise EmbedderError(f"{args.folder} is not a directory")
    sources = sources_from_directory(args.folder, exclude=blacklist_predicate(args.exclude))
    logger.info(f"Packing {len(sources)} files from {args.folder}")
    result = pack_sources(sources, level=args.level, max_workers=args.workers)
    publish_artifacts(result.blob, result.table, args.output, args.index)


def run_unpack(args: argparse.Namespace) -> None:
    """
    Extract all members, refusing any name that would land outside output_dir.

    Nothing is written unless every member decompresses.
    """
    bundle = load_bundle(args.blob, args.index, allow_raw=args.allow_raw)
    root = os.path.realpath(args.output_dir)
    files: List[Tuple[str, bytes]] = []
    for name, data in bundle.resolve_all().items():
        path = os.path.realpath(os.path.join(root, *name.split('/')))
        if path == root or os.path.commonpath([root, path]) != root:
            raise EmbedderError(f"Refusing to unpack {name!r} outside {args.output_dir}")
        files.append((path, data))
        logger.debug(f"  Unpacked: {name} ({len(data)} bytes)")
    publish_files(files)
    logger.info(f"Unpacked {len(files)} member(s) to {args.output_dir}")


def run_list(args: argparse.Namespace) -> None:
    bundle = load_bundle(args.blob, args.index)
    for record in bundle.table:
        print(f"{record.offset:>12} {record.size:>10}  {record.name}")


COMMANDS = {
    'build': run_build,
    'pack': run_pack,
    'unpack': run_unpack,
    'list': run_list,
}


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the command line.

    Args:
        argv: Arguments without the program name (default: sys.argv[1:])

    Returns:
        Exit code: 0 on success, 1 on any packing, build or I/O error.
    """
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose, args.quiet)

    try:
        COMMANDS[args.command](args)
    except (EmbedderError, OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
