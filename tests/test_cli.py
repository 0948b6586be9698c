import os

from conftest import ASSEMBLIES
from embedder.additions.bundle import load_bundle, open_bundle
from embedder.cli import main
from embedder.utils.artifacts import publish_artifacts
from embedder.utils.packer_gzip import pack_members


def _make_folder(root):
    (root / "nested").mkdir(parents=True)
    (root / "A.dll").write_bytes(b"hello-assembly-A\n")
    (root / "B.dll").write_bytes(b"")
    (root / "nested" / "C.dll").write_bytes(b"C" * 5000)
    return root


class TestPackCommands:

    def test_pack_list_unpack(self, tmp_path, capsys):
        folder = _make_folder(tmp_path / "in")
        blob = tmp_path / "out" / "assets.bin"
        index = tmp_path / "out" / "assets.json"
        header = tmp_path / "out" / "assets.h"

        code = main([
            "pack", str(folder),
            "-o", str(blob),
            "--index", str(index),
            "--index", str(header),
            "--workers", "1",
        ])
        assert code == 0
        assert load_bundle(blob, header).names() == ["A.dll", "B.dll", "nested/C.dll"]

        capsys.readouterr()
        assert main(["list", str(blob), str(index)]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert [line.split()[-1] for line in lines] == ["A.dll", "B.dll", "nested/C.dll"]
        assert lines[0].split()[0] == "0"

        target = tmp_path / "unpacked"
        assert main(["unpack", str(blob), str(index), str(target)]) == 0
        assert (target / "A.dll").read_bytes() == b"hello-assembly-A\n"
        assert (target / "B.dll").read_bytes() == b""
        assert (target / "nested" / "C.dll").read_bytes() == b"C" * 5000

    def test_pack_in_parallel(self, tmp_path):
        folder = _make_folder(tmp_path / "in")
        blob = tmp_path / "assets.bin"
        index = tmp_path / "assets.json"
        assert main(["pack", str(folder), "-o", str(blob), "--index", str(index), "--workers", "2", "-q"]) == 0
        assert load_bundle(blob, index).resolve("nested/C.dll") == b"C" * 5000

    def test_pack_exclude(self, tmp_path):
        folder = _make_folder(tmp_path / "in")
        blob = tmp_path / "assets.bin"
        index = tmp_path / "assets.json"
        code = main([
            "pack", str(folder), "-o", str(blob), "--index", str(index),
            "--exclude", "b.dll, c.DLL", "--workers", "1",
        ])
        assert code == 0
        assert load_bundle(blob, index).names() == ["A.dll"]

    def test_pack_missing_folder(self, tmp_path, capsys):
        code = main([
            "pack", str(tmp_path / "missing"),
            "-o", str(tmp_path / "a.bin"),
            "--index", str(tmp_path / "a.json"),
        ])
        assert code == 1
        assert "Error:" in capsys.readouterr().err
        assert not (tmp_path / "a.bin").exists()

    def test_pack_bad_level(self, tmp_path):
        folder = _make_folder(tmp_path / "in")
        code = main([
            "pack", str(folder), "-o", str(tmp_path / "a.bin"),
            "--index", str(tmp_path / "a.json"), "--level", "11",
        ])
        assert code == 1

    def test_unpack_refuses_paths_outside_target(self, tmp_path, capsys):
        result = pack_members([("../evil.dll", b"escape"), ("ok.dll", b"fine")])
        blob = tmp_path / "assets.bin"
        index = tmp_path / "assets.json"
        publish_artifacts(result.blob, result.table, blob, [index])

        target = tmp_path / "target"
        assert main(["unpack", str(blob), str(index), str(target)]) == 1
        assert "Refusing to unpack" in capsys.readouterr().err
        assert not (tmp_path / "evil.dll").exists()
        assert not (target / "ok.dll").exists()

    def test_unpack_corrupt_blob(self, tmp_path):
        result = pack_members([("A.dll", b"hello-assembly-A\n")])
        blob = tmp_path / "assets.bin"
        index = tmp_path / "assets.json"
        publish_artifacts(result.blob, result.table, blob, [index])
        blob.write_bytes(result.blob[:-1])
        assert main(["unpack", str(blob), str(index), str(tmp_path / "target")]) == 1


class TestBuildCommand:

    def test_build(self, runtime_root, tmp_path):
        out = tmp_path / "out"
        code = main([
            "build",
            "--runtime", str(runtime_root),
            "--out", str(out),
            "--compress",
            "--blacklist", "Accessibility",
            "--workers", "1",
        ])
        assert code == 0
        bundle = open_bundle(out / "Mono.framework")
        assert bundle.resolve("mscorlib.dll") == ASSEMBLIES["mscorlib.dll"]
        assert "Accessibility.dll" not in bundle

    def test_build_uses_current_version(self, runtime_root, tmp_path):
        framework = tmp_path / "Installed.framework"
        (framework / "Versions").mkdir(parents=True)
        os.symlink(runtime_root, framework / "Versions" / "Current")
        out = tmp_path / "out"
        code = main(["build", "--runtime", str(framework), "--out", str(out), "--name", "Embedded"])
        assert code == 0
        assert os.readlink(out / "Embedded.framework" / "Embedded") == "Versions/Current/Embedded"

    def test_build_missing_runtime(self, tmp_path, capsys):
        code = main(["build", "--runtime", str(tmp_path / "nowhere"), "--out", str(tmp_path / "out")])
        assert code == 1
        assert "Runtime path does not exist" in capsys.readouterr().err
