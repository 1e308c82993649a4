"""Pytest fixtures shared across all test modules."""

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

from notebook_go import EngineConfig, NotebookKernel, RecordingBus
from notebook_go.synthesizer import MAIN_FILE, TEST_FILE
from notebook_go.toolchain import GoToolchain, ToolResult


# Python snippet a fake cell program can use to write sideband frames.
SIDEBAND_PRELUDE = '''
import json, os, struct, sys

def send(**frame):
    body = json.dumps(frame).encode("utf-8")
    with open(os.environ["NOTEBOOK_GO_PIPE"], "wb") as pipe:
        pipe.write(struct.pack(">I", len(body)) + body)
'''


class FakeToolchain(GoToolchain):
    """
    Stands in for the `go` command.

    "Building" writes `script` as an executable Python program to the
    artifact path. `on_build` sees the synthesized source and may return a
    failed ToolResult to simulate a compiler error.
    """

    def __init__(self, script: str = 'print("hello")'):
        super().__init__("go")
        self.script = script
        self.on_build: Optional[Callable[[str], Optional[ToolResult]]] = None
        self.sources: list[str] = []
        self.filenames: list[str] = []
        self.flags: list[list[str]] = []
        self.got: list[list[str]] = []
        self.wasm_support: Optional[Path] = None

    @property
    def executable(self) -> str:
        return "go"

    def run(self, args, cwd, env=None, on_start=None) -> ToolResult:
        return ToolResult(0)

    def mod_init(self, module_dir, module) -> ToolResult:
        (Path(module_dir) / "go.mod").write_text(f"module {module}\n\ngo 1.21\n")
        return ToolResult(0)

    def _build(self, module_dir, output, flags) -> ToolResult:
        for name in (MAIN_FILE, TEST_FILE):
            path = Path(module_dir) / name
            if path.exists():
                self.sources.append(path.read_text())
                self.filenames.append(name)
        self.flags.append(list(flags))
        if self.on_build is not None:
            result = self.on_build(self.sources[-1])
            if result is not None and not result.ok:
                return result
        Path(output).write_text(f"#!{sys.executable}\n{self.script}\n")
        Path(output).chmod(0o755)
        return ToolResult(0)

    def build(self, module_dir, output, flags, env=None, on_start=None) -> ToolResult:
        return self._build(module_dir, output, flags)

    def test_build(self, module_dir, output, flags, env=None, on_start=None) -> ToolResult:
        return self._build(module_dir, output, flags)

    def get(self, module_dir, packages, on_start=None) -> ToolResult:
        self.got.append(list(packages))
        return ToolResult(0)

    def mod_replace(self, module_dir, module, directory) -> ToolResult:
        with open(Path(module_dir) / "go.mod", "a") as f:
            f.write(f"\nreplace {module} => {directory}\n")
        return ToolResult(0)

    def wasm_exec_js(self, cwd) -> Optional[Path]:
        return self.wasm_support


@pytest.fixture
def fake_toolchain():
    return FakeToolchain()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(scratch_root=tmp_path / "scratch", wasm_root=tmp_path / "wasm",
                        input_wait_ms=100, heartbeat_timeout=0.2)


@pytest.fixture
def kernel(engine_config, bus, fake_toolchain):
    """Kernel running cells through the fake toolchain."""
    k = NotebookKernel(config=engine_config, bus=bus, toolchain=fake_toolchain)
    yield k
    k.shutdown()


@pytest.fixture
def go_kernel(tmp_path, bus):
    """Kernel using the real go toolchain."""
    k = NotebookKernel(config=EngineConfig(scratch_root=tmp_path / "scratch"), bus=bus)
    yield k
    k.shutdown()


@pytest.fixture
def sideband_prelude():
    return SIDEBAND_PRELUDE
