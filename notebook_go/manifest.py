"""
go.mod management and tracked paths for the completion companion.
"""

import hashlib
import logging
import os
import re
from pathlib import Path
from typing import Optional

from notebook_go.errors import DirectiveError, WorkspaceError
from notebook_go.toolchain import GoToolchain


logger = logging.getLogger(__name__)

_MODULE_RE = re.compile(r"^\s*module\s+(\S+)", re.MULTILINE)
_REPLACE_LINE_RE = re.compile(r"^\s*(\S+)(?:\s+\S+)?\s*=>\s*(\S+)(?:\s+\S+)?\s*$")
_USE_LINE_RE = re.compile(r"^\s*(\S+)\s*$")


def _directive_lines(text: str, keyword: str) -> list[str]:
    """Lines of a go.mod / go.work directive, single-line or block form."""
    result = []
    in_block = False
    for raw in text.splitlines():
        line = raw.split("//", 1)[0].rstrip()
        if in_block:
            if line.strip() == ")":
                in_block = False
            elif line.strip():
                result.append(line)
            continue
        stripped = line.strip()
        if stripped == f"{keyword} (" or stripped == f"{keyword}(":
            in_block = True
        elif stripped.startswith(keyword + " "):
            result.append(stripped[len(keyword):])
    return result


def module_name(directory: Path) -> Optional[str]:
    """Module path declared by `directory/go.mod`, if any."""
    go_mod = Path(directory) / "go.mod"
    try:
        m = _MODULE_RE.search(go_mod.read_text())
    except OSError:
        return None
    return m.group(1) if m else None


class ManifestWatcher:
    """Detects content changes of a file by mtime, confirmed by hash."""

    def __init__(self, file_path: Path):
        self.file_path = Path(file_path)
        self._last_mtime: float = 0.0
        self._last_hash: Optional[str] = None
        self._update_state()

    def _get_file_hash(self) -> Optional[str]:
        try:
            return hashlib.sha256(self.file_path.read_bytes()).hexdigest()
        except OSError:
            return None

    def _update_state(self) -> None:
        try:
            self._last_mtime = os.path.getmtime(self.file_path)
        except OSError:
            self._last_mtime = 0.0
        self._last_hash = self._get_file_hash()

    def has_changes(self) -> bool:
        try:
            current_mtime = os.path.getmtime(self.file_path)
        except OSError:
            return self._last_hash is not None
        if current_mtime == self._last_mtime:
            return False
        if self._get_file_hash() != self._last_hash:
            return True
        # mtime changed but content same
        self._last_mtime = current_mtime
        return False

    def acknowledge_changes(self) -> None:
        self._update_state()


class TrackedPaths:
    """Files and directories registered for the completion companion."""

    def __init__(self):
        self._paths: list[Path] = []

    def __iter__(self):
        return iter(list(self._paths))

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path) -> bool:
        return Path(path).resolve() in self._paths

    def add(self, path) -> Path:
        resolved = Path(os.path.expanduser(str(path))).resolve()
        if not resolved.exists():
            raise DirectiveError(f"cannot track {str(path)!r}: no such file or directory")
        if resolved not in self._paths:
            self._paths.append(resolved)
        return resolved

    def remove(self, spec: str) -> list[Path]:
        """Untrack a path; a trailing `...` untracks everything under the prefix."""
        spec = os.path.expanduser(spec)
        if spec.endswith("..."):
            prefix = spec[:-3]
            removed = [p for p in self._paths if str(p).startswith(prefix)]
        else:
            target = Path(spec).resolve()
            removed = [p for p in self._paths if p == target]
        self._paths = [p for p in self._paths if p not in removed]
        return removed

    def clear(self) -> None:
        self._paths.clear()

    def prune_missing(self) -> list[Path]:
        gone = [p for p in self._paths if not p.exists()]
        for p in gone:
            logger.warning("tracked path %s no longer exists, untracking it", p)
        self._paths = [p for p in self._paths if p not in gone]
        return gone


class Manifest:
    """The go.mod of the scratch workspace."""

    def __init__(self, workspace: Path, toolchain: GoToolchain, module: str,
                 tracked: Optional[TrackedPaths] = None):
        self.workspace = Path(workspace)
        self.toolchain = toolchain
        self.module = module
        self.tracked = tracked if tracked is not None else TrackedPaths()
        self.watcher = ManifestWatcher(self.path)

    @property
    def path(self) -> Path:
        return self.workspace / "go.mod"

    @property
    def work_path(self) -> Path:
        return self.workspace / "go.work"

    def init(self) -> None:
        if not self.path.exists():
            result = self.toolchain.mod_init(self.workspace, self.module)
            if not result.ok:
                raise WorkspaceError(f"`go mod init {self.module}` failed:\n{result.output}")
        self.watcher.acknowledge_changes()

    def reset(self) -> None:
        """Discard go.mod and go.sum and start from a pristine module."""
        for name in ("go.mod", "go.sum"):
            (self.workspace / name).unlink(missing_ok=True)
        self.init()

    def read(self) -> str:
        try:
            return self.path.read_text()
        except OSError:
            return ""

    def replace_rules(self) -> list[tuple[str, str]]:
        rules = []
        for line in _directive_lines(self.read(), "replace"):
            m = _REPLACE_LINE_RE.match(line)
            if m:
                rules.append((m.group(1), m.group(2)))
        return rules

    def add_replace(self, module: str, directory: Path) -> None:
        result = self.toolchain.mod_replace(self.workspace, module, Path(directory))
        if not result.ok:
            raise DirectiveError(f"failed to add replace rule for {module!r}:\n{result.output}")

    def go_work_uses(self) -> list[Path]:
        try:
            text = self.work_path.read_text()
        except OSError:
            return []
        uses = []
        for line in _directive_lines(text, "use"):
            m = _USE_LINE_RE.match(line)
            if m:
                path = Path(os.path.expanduser(m.group(1)))
                if not path.is_absolute():
                    path = self.workspace / path
                uses.append(path.resolve())
        return uses

    def go_work_fix(self) -> list[tuple[str, Path]]:
        """Add a replace rule for every module listed in go.work."""
        if not self.work_path.exists():
            raise DirectiveError(f"no go.work found in {self.workspace}")
        added = []
        for directory in self.go_work_uses():
            if directory == self.workspace.resolve():
                continue
            name = module_name(directory)
            if name is None:
                logger.warning("go.work uses %s, which has no go.mod", directory)
                continue
            self.add_replace(name, directory)
            added.append((name, directory))
        return added

    def auto_track(self, force: bool = False) -> list[Path]:
        """Track local directories of replace rules if go.mod changed."""
        if not force and not self.watcher.has_changes():
            return []
        added = []
        for _, target in self.replace_rules():
            if not (target.startswith("/") or target.startswith(".")):
                continue
            path = Path(target)
            if not path.is_absolute():
                path = (self.workspace / path).resolve()
            if path.exists() and path not in self.tracked:
                added.append(self.tracked.add(path))
        self.watcher.acknowledge_changes()
        return added

    def ensure_consistent(self) -> None:
        """Called before every build: go.mod exists and tracked paths are current."""
        if not self.path.exists():
            self.init()
        self.auto_track()
        self.tracked.prune_missing()
