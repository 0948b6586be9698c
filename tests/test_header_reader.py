"""
Compiles the generated C header and runs its native reader against a real blob.
"""

import shutil
import subprocess

import pytest

from embedder.utils.metadata_codec import HEADER_BLOB_PATH, HeaderMetadataCodec
from embedder.utils.packer_gzip import pack_members

CC = shutil.which("cc")

pytestmark = pytest.mark.skipif(CC is None, reason="No C compiler (cc) available")

MEMBERS = [
    ("mscorlib.dll", b"MZ mscorlib " * 400),
    ("a??=b.dll", b"trigraph-looking name"),
    ("Empty.dll", b""),
]

READER_MAIN = r"""
#include <stdio.h>
#include <stdlib.h>
#include "Assemblies.h"

int main(int argc, char **argv)
{
    size_t blob_size = 0;
    unsigned char *blob;
    const embedded_asset_t *asset;
    unsigned char *out = NULL;
    size_t out_size = 0;

    if (argc != 3) {
        return 10;
    }
    blob = embedded_assets_load_blob(argv[1], &blob_size);
    if (blob == NULL) {
        return 2;
    }
    asset = embedded_assets_find(argv[2]);
    if (asset == NULL) {
        free(blob);
        return 3;
    }
    if (embedded_assets_inflate(blob, blob_size, asset, &out, &out_size) != EMBEDDED_ASSETS_OK) {
        free(blob);
        return 4;
    }
    fwrite(out, 1, out_size, stdout);
    free(out);
    free(blob);
    return 0;
}
"""

INFLATE_ALL_MAIN = r"""
#include <stdio.h>
#include <stdlib.h>
#include "Assemblies.h"

int main(int argc, char **argv)
{
    size_t blob_size = 0;
    unsigned char *blob = embedded_assets_load_blob(argv[1], &blob_size);
    unsigned char *outs[embedded_assets_count + 1];
    size_t out_sizes[embedded_assets_count + 1];
    size_t i;
    int status;

    (void)argc;
    if (blob == NULL) {
        return 20;
    }
    status = embedded_assets_inflate_all(blob, blob_size, outs, out_sizes);
    free(blob);
    if (status != EMBEDDED_ASSETS_OK) {
        return -status;
    }
    for (i = 0; i < embedded_assets_count; i++) {
        printf("%s %lu\n", embedded_assets[i].name, (unsigned long)out_sizes[i]);
        free(outs[i]);
    }
    return 0;
}
"""


def _compile(workdir, source, name):
    """Build a program against Assemblies.h in workdir; skip when zlib is not installed."""
    check = workdir / "zlib_check.c"
    check.write_text("#include <zlib.h>\nint main(void) { return zlibVersion()[0] == 0; }\n")
    result = subprocess.run(
        [CC, str(check), "-o", str(workdir / "zlib_check"), "-lz"],
        capture_output=True, text=True, timeout=120,
    )
    if result.returncode != 0:
        pytest.skip("zlib development files not available")

    main = workdir / f"{name}.c"
    main.write_text(source)
    program = workdir / name
    result = subprocess.run(
        [CC, "-std=c99", "-Wall", str(main), "-I", str(workdir), "-o", str(program), "-lz"],
        capture_output=True, text=True, timeout=120,
    )
    assert result.returncode == 0, result.stderr
    return program


def _write_bundle(tmp_path, blob, table):
    bundle = tmp_path / "Mono.framework"
    blob_path = bundle.joinpath(*HEADER_BLOB_PATH.split("/"))
    blob_path.parent.mkdir(parents=True)
    blob_path.write_bytes(blob)
    (tmp_path / "Assemblies.h").write_text(HeaderMetadataCodec().render(table))
    return bundle


def _run(program, *args):
    return subprocess.run([str(program), *args], capture_output=True, timeout=60)


class TestCompiledHeader:

    def test_header_is_valid_c(self, tmp_path):
        result = pack_members(MEMBERS)
        header = tmp_path / "Assemblies.h"
        header.write_text(HeaderMetadataCodec().render(result.table))
        source = tmp_path / "include_twice.c"
        source.write_text('#include "Assemblies.h"\n#include "Assemblies.h"\n')
        result = subprocess.run(
            [CC, "-std=c99", "-fsyntax-only", "-I", str(tmp_path), str(source)],
            capture_output=True, text=True, timeout=120,
        )
        if result.returncode != 0 and "zlib.h" in result.stderr:
            pytest.skip("zlib development files not available")
        assert result.returncode == 0, result.stderr

    @pytest.mark.parametrize("name,data", MEMBERS)
    def test_find_and_inflate(self, tmp_path, name, data):
        result = pack_members(MEMBERS)
        bundle = _write_bundle(tmp_path, result.blob, result.table)
        program = _compile(tmp_path, READER_MAIN, "reader")

        run = _run(program, str(bundle), name)
        assert run.returncode == 0
        assert run.stdout == data

    def test_missing_name(self, tmp_path):
        result = pack_members(MEMBERS)
        bundle = _write_bundle(tmp_path, result.blob, result.table)
        program = _compile(tmp_path, READER_MAIN, "reader")

        assert _run(program, str(bundle), "MSCORLIB.DLL").returncode == 3
        assert _run(program, str(bundle), "missing.dll").returncode == 3

    def test_missing_blob(self, tmp_path):
        result = pack_members(MEMBERS)
        _write_bundle(tmp_path, result.blob, result.table)
        program = _compile(tmp_path, READER_MAIN, "reader")

        assert _run(program, str(tmp_path / "nowhere"), "mscorlib.dll").returncode == 2

    def test_damaged_member_is_rejected(self, tmp_path):
        result = pack_members(MEMBERS)
        record = result.table.lookup("mscorlib.dll")
        damaged = bytearray(result.blob)
        damaged[record.offset + record.size // 2] ^= 0xff
        bundle = _write_bundle(tmp_path, bytes(damaged), result.table)
        program = _compile(tmp_path, READER_MAIN, "reader")

        run = _run(program, str(bundle), "mscorlib.dll")
        assert run.returncode == 4
        assert run.stdout == b""

    def test_missing_magic_is_rejected(self, tmp_path):
        result = pack_members(MEMBERS)
        record = result.table.lookup("mscorlib.dll")
        damaged = bytearray(result.blob)
        damaged[record.offset] = 0x00
        bundle = _write_bundle(tmp_path, bytes(damaged), result.table)
        program = _compile(tmp_path, READER_MAIN, "reader")

        assert _run(program, str(bundle), "mscorlib.dll").returncode == 4

    def test_truncated_blob_is_out_of_range(self, tmp_path):
        result = pack_members(MEMBERS)
        last = result.table.lookup("Empty.dll")
        bundle = _write_bundle(tmp_path, result.blob[:last.offset + 1], result.table)
        program = _compile(tmp_path, READER_MAIN, "reader")

        assert _run(program, str(bundle), "Empty.dll").returncode == 4
        assert _run(program, str(bundle), "mscorlib.dll").returncode == 0

    def test_inflate_all(self, tmp_path):
        result = pack_members(MEMBERS)
        bundle = _write_bundle(tmp_path, result.blob, result.table)
        program = _compile(tmp_path, INFLATE_ALL_MAIN, "inflate_all")

        run = _run(program, str(bundle))
        assert run.returncode == 0
        lines = run.stdout.decode("utf-8").splitlines()
        assert lines == [f"{name} {len(data)}" for name, data in MEMBERS]

    def test_inflate_all_fails_as_a_whole(self, tmp_path):
        result = pack_members(MEMBERS)
        record = result.table.lookup("Empty.dll")
        damaged = bytearray(result.blob)
        damaged[record.offset + 1] = 0x00
        bundle = _write_bundle(tmp_path, bytes(damaged), result.table)
        program = _compile(tmp_path, INFLATE_ALL_MAIN, "inflate_all")

        run = _run(program, str(bundle))
        assert run.returncode == 2  # -ERR_CORRUPT
        assert run.stdout == b""
