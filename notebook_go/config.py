"""
Engine configuration and per-cell submission state.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


ENV_DIR = "NOTEBOOK_GO_DIR"
ENV_TMP_DIR = "NOTEBOOK_GO_TMP_DIR"
ENV_PIPE = "NOTEBOOK_GO_PIPE"
ENV_WASM_DIR = "NOTEBOOK_GO_WASM_DIR"
ENV_WASM_URL = "NOTEBOOK_GO_WASM_URL"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


class EngineConfig(BaseModel):
    """Settings that persist across cells."""
    build_flags: list[str] = Field(default_factory=list)
    auto_get: bool = True
    scratch_root: Optional[Path] = None
    wasm_root: Optional[Path] = None
    wasm_url_prefix: str = "/files/"
    go_binary: str = "go"
    bash: str = "/bin/bash"
    input_wait_ms: int = 200
    heartbeat_timeout: float = 1.0

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """Build a config from NOTEBOOK_GO_* environment variables."""
        data: dict = {"auto_get": _env_flag("NOTEBOOK_GO_AUTOGET", True)}
        flags = os.environ.get("NOTEBOOK_GO_BUILD_FLAGS")
        if flags:
            data["build_flags"] = flags.split()
        for key, env in (("scratch_root", "NOTEBOOK_GO_SCRATCH_ROOT"),
                         ("wasm_root", "NOTEBOOK_GO_WASM_ROOT")):
            if os.environ.get(env):
                data[key] = Path(os.environ[env])
        if os.environ.get("NOTEBOOK_GO_GO"):
            data["go_binary"] = os.environ["NOTEBOOK_GO_GO"]
        data.update(overrides)
        return cls(**data)


class Submission(BaseModel):
    """One cell as delivered by the message bus, plus its per-cell flags."""
    lines: list[str] = Field(default_factory=list)
    execution_count: int = 0
    allow_stdin: bool = False

    # Flags set by special commands; they only last for this cell.
    args: list[str] = Field(default_factory=list)
    explicit_args: bool = False
    test: bool = False
    wasm: bool = False
    with_inputs: bool = False
    with_password: bool = False
    main_from: Optional[int] = None
    wasm_dir: Optional[Path] = None
    wasm_url: str = ""
    wasm_div_id: Optional[str] = None

    @classmethod
    def from_code(cls, code: str, execution_count: int = 0,
                  allow_stdin: bool = False) -> "Submission":
        return cls(lines=code.split("\n"), execution_count=execution_count,
                   allow_stdin=allow_stdin)
