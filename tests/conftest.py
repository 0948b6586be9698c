import logging

import pytest


@pytest.fixture(autouse=True)
def reset_embedder_logger():
    """The CLI installs its own handler; drop it so later tests log normally."""
    yield
    logger = logging.getLogger("embedder")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


ASSEMBLIES = {
    "mscorlib.dll": b"MZ mscorlib " * 50,
    "System.dll": b"MZ System " * 40,
    "System.Core.dll": b"MZ System.Core " * 30,
    "Accessibility.dll": b"MZ Accessibility",
}


@pytest.fixture
def runtime_root(tmp_path):
    """A minimal installed runtime laid out like Versions/Current of the real one."""
    root = tmp_path / "runtime"
    (root / "etc" / "mono" / "4.5").mkdir(parents=True)
    (root / "etc" / "mono" / "4.5" / "machine.config").write_text("<configuration/>")

    lib = root / "lib"
    (lib / "mono" / "4.5" / "Facades").mkdir(parents=True)
    (lib / "libmonosgen-2.0.dylib").write_bytes(b"\xcf\xfa\xed\xfe sgen")
    (lib / "libmono-native-compat.0.dylib").write_bytes(b"\xcf\xfa\xed\xfe native")
    (lib / "libMonoPosixHelper.dylib").write_bytes(b"\xcf\xfa\xed\xfe posix")

    assembly_dir = lib / "mono" / "4.5"
    for name, data in ASSEMBLIES.items():
        (assembly_dir / name).write_bytes(data)
    (assembly_dir / "Facades" / "netstandard.dll").write_bytes(b"MZ netstandard")
    (assembly_dir / "Facades" / "System.Runtime.dll").write_bytes(b"MZ facade not collected")
    (assembly_dir / "README.txt").write_text("not an assembly")
    (assembly_dir / ".hidden.dll").write_bytes(b"MZ hidden")
    return root
