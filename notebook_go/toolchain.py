"""
GoToolchain: thin wrapper around the `go` command.
"""

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from notebook_go.errors import ToolchainNotFoundError


logger = logging.getLogger(__name__)

_MISSING_PACKAGE_RES = [
    re.compile(r'no required module provides package ([^\s;:"]+)'),
    re.compile(r'cannot find package "([^"]+)"'),
    re.compile(r"missing go\.sum entry for module providing package ([^\s;:\"()]+)"),
    re.compile(r"could not import ([^\s;:\"()]+) \(no required module"),
]


@dataclass
class ToolResult:
    """Outcome of one toolchain command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def missing_packages(output: str) -> list[str]:
    """Packages a failed build reported as not provided by any module."""
    found: list[str] = []
    for regex in _MISSING_PACKAGE_RES:
        for m in regex.finditer(output):
            if m.group(1) not in found:
                found.append(m.group(1))
    return found


class GoToolchain:
    """
    Runs `go` subcommands inside a module directory.

    `on_start` is called with each spawned Popen so the caller can cancel it.
    """

    def __init__(self, go_binary: str = "go"):
        self.go_binary = go_binary
        self._resolved: Optional[str] = None

    @property
    def executable(self) -> str:
        if self._resolved is None:
            found = shutil.which(self.go_binary)
            if found is None:
                raise ToolchainNotFoundError(self.go_binary)
            self._resolved = found
        return self._resolved

    def run(self, args: list[str], cwd: Path, env: Optional[dict] = None,
            on_start: Optional[Callable[[subprocess.Popen], None]] = None) -> ToolResult:
        cmd = [self.executable, *args]
        logger.debug("running %s in %s", cmd, cwd)
        proc = subprocess.Popen(
            cmd, cwd=str(cwd), env=env or os.environ.copy(),
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            start_new_session=True,
        )
        if on_start is not None:
            on_start(proc)
        stdout, stderr = proc.communicate()
        if proc.returncode != 0:
            logger.info("go %s failed with exit code %d", args[0], proc.returncode)
        return ToolResult(proc.returncode, stdout, stderr)

    def mod_init(self, module_dir: Path, module: str) -> ToolResult:
        return self.run(["mod", "init", module], module_dir)

    def build(self, module_dir: Path, output: Path, flags: list[str],
              env: Optional[dict] = None, on_start=None) -> ToolResult:
        return self.run(["build", "-o", str(output), *flags, "."], module_dir, env, on_start)

    def test_build(self, module_dir: Path, output: Path, flags: list[str],
                   env: Optional[dict] = None, on_start=None) -> ToolResult:
        return self.run(["test", "-c", "-o", str(output), *flags, "."], module_dir, env, on_start)

    def get(self, module_dir: Path, packages: list[str], on_start=None) -> ToolResult:
        return self.run(["get", *packages], module_dir, on_start=on_start)

    def mod_replace(self, module_dir: Path, module: str, directory: Path) -> ToolResult:
        return self.run(["mod", "edit", f"-replace={module}={directory}"], module_dir)

    def env_value(self, name: str, cwd: Path) -> str:
        result = self.run(["env", name], cwd)
        return result.stdout.strip() if result.ok else ""

    def wasm_exec_js(self, cwd: Path) -> Optional[Path]:
        """Location of the `wasm_exec.js` support file of this Go installation."""
        goroot = self.env_value("GOROOT", cwd)
        if not goroot:
            return None
        for sub in ("lib/wasm", "misc/wasm"):
            candidate = Path(goroot) / sub / "wasm_exec.js"
            if candidate.exists():
                return candidate
        return None
