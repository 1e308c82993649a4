"""
SessionManager: Manages saving/loading of kernel state.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import dill

from notebook_go.declarations import StoreSnapshot
from notebook_go.kernel import ExecutionResult, NotebookKernel


logger = logging.getLogger(__name__)


class SessionManager:
    """
    Manages saving/loading of kernel state.

    A session holds the memorized declarations, the persistent engine
    settings, the tracked paths and the execution history. Uses dill for
    serialization.
    """

    def __init__(self, sessions_dir: Optional[Path] = None):
        """
        Initialize session manager.

        Args:
            sessions_dir: Directory to store session files
        """
        self.sessions_dir = sessions_dir or Path.home() / ".notebook_go" / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def save_session(self, kernel: NotebookKernel, path: Optional[Path] = None, name: Optional[str] = None) -> Path:
        """
        Save the kernel state to a file.

        Args:
            kernel: NotebookKernel instance to save
            path: Optional specific path to save to
            name: Optional name for the session

        Returns:
            Path to saved session file
        """
        snapshot = kernel.get_state()
        state = {
            "declarations": snapshot.model_dump(mode="json"),
            "config": {
                "build_flags": list(kernel.config.build_flags),
                "auto_get": kernel.config.auto_get,
            },
            "tracked": [str(p) for p in kernel.tracked],
            "execution_count": kernel.execution_count,
            "history": [
                (count, code, result.to_dict())
                for count, code, result in kernel.get_history()
            ],
            "saved_at": datetime.now().isoformat(),
        }

        # Determine path
        if path is None:
            name = name or f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
            path = self.sessions_dir / f"{name}.session"

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "wb") as f:
            dill.dump(state, f)

        return path

    def load_session(self, kernel: NotebookKernel, path: Path) -> dict[str, Any]:
        """
        Load kernel state from a file.

        Args:
            kernel: NotebookKernel instance to restore into
            path: Path to session file

        Returns:
            Dictionary with load information
        """
        path = Path(path)

        with open(path, "rb") as f:
            state = dill.load(f)

        snapshot = StoreSnapshot.model_validate(state["declarations"])
        kernel.restore_state(snapshot)
        kernel.config.build_flags = state.get("config", {}).get("build_flags", [])
        kernel.config.auto_get = state.get("config", {}).get("auto_get", True)
        kernel.execution_count = state["execution_count"]

        untracked = []
        for tracked in state.get("tracked", []):
            if Path(tracked).exists():
                kernel.tracked.add(tracked)
            else:
                untracked.append(tracked)
                logger.warning("tracked path %s no longer exists, not restored", tracked)

        kernel.clear_history()
        for count, code, result_dict in state.get("history", []):
            result = ExecutionResult.from_dict(result_dict)
            kernel._history.append((count, code, result))

        return {
            "restored_declarations": [d.identifier or "init" for d in snapshot.all()],
            "missing_tracked": untracked,
            "saved_at": state.get("saved_at"),
        }

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        List available saved sessions.

        Returns:
            List of session info dictionaries
        """
        sessions = []
        for path in self.sessions_dir.glob("*.session"):
            try:
                with open(path, "rb") as f:
                    state = dill.load(f)
                declarations = state.get("declarations", {})
                sessions.append({
                    "path": str(path),
                    "name": path.stem,
                    "saved_at": state.get("saved_at"),
                    "decl_count": sum(len(v) for v in declarations.values()),
                })
            except Exception as e:
                sessions.append({
                    "path": str(path),
                    "name": path.stem,
                    "error": str(e),
                })
        return sorted(sessions, key=lambda x: x.get("saved_at") or "", reverse=True)

    def delete_session(self, path: Path) -> bool:
        """Delete a session file."""
        path = Path(path)
        if path.exists():
            path.unlink()
            return True
        return False

    def get_checkpoint_path(self, notebook_path: Path) -> Path:
        """Get the checkpoint path for a notebook."""
        notebook_path = Path(notebook_path)
        return self.sessions_dir / "checkpoints" / f"{notebook_path.stem}.checkpoint"

    def save_checkpoint(self, kernel: NotebookKernel, notebook_path: Path) -> Path:
        """Save a checkpoint for a notebook."""
        checkpoint_path = self.get_checkpoint_path(notebook_path)
        checkpoint_path.parent.mkdir(parents=True, exist_ok=True)

        return self.save_session(kernel, path=checkpoint_path)

    def load_checkpoint(self, kernel: NotebookKernel, notebook_path: Path) -> Optional[dict]:
        """
        Load checkpoint for a notebook.

        Returns:
            Load info or None if no checkpoint exists
        """
        checkpoint_path = self.get_checkpoint_path(notebook_path)
        if checkpoint_path.exists():
            return self.load_session(kernel, checkpoint_path)
        return None
