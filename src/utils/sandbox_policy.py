"""
Sandbox limits and capability policy.

Both are read-only at run time: they are built once from the environment and
shared by every run. The policy is serialized into each run's input handoff and
installed by the child only inside the namespace of the transformation code.
"""

import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet

from dotenv import load_dotenv

from src.utils.static_safety_scan import BLOCKED_CALLS, BLOCKED_MODULES

load_dotenv()

SANDBOX_TIMEOUT_S = 30
RESTRICTED_PATH = "/usr/bin:/bin"

# Builtins removed from the transformation namespace.
DENIED_BUILTINS = frozenset({
    "open", "exec", "eval", "compile", "input", "breakpoint", "globals",
    "vars", "locals", "getattr", "setattr", "delattr", "exit", "quit",
    "help", "copyright", "credits", "license", "memoryview",
})


@dataclass(frozen=True)
class SandboxPolicy:
    """Denylist policy. Everything not named here is allowed."""

    denied_modules: FrozenSet[str] = BLOCKED_MODULES
    denied_calls: FrozenSet[str] = BLOCKED_CALLS
    denied_builtins: FrozenSet[str] = DENIED_BUILTINS
    static_scan: bool = True
    runtime_guard: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "kind": "denylist",
            "denied_modules": sorted(self.denied_modules),
            "denied_calls": sorted(self.denied_calls),
            "denied_builtins": sorted(self.denied_builtins),
            "static_scan": self.static_scan,
            "runtime_guard": self.runtime_guard,
        }


@dataclass(frozen=True)
class ExecutionLimits:
    timeout_s: float = SANDBOX_TIMEOUT_S
    python_executable: str = sys.executable
    preview_rows: int = 10
    path: str = RESTRICTED_PATH
    kill_grace_s: float = 2.0
    policy: SandboxPolicy = field(default_factory=SandboxPolicy)

    @classmethod
    def from_env(cls) -> "ExecutionLimits":
        return cls(
            timeout_s=float(os.getenv("SANDBOX_TIMEOUT_S", str(SANDBOX_TIMEOUT_S))),
            python_executable=os.getenv("SANDBOX_PYTHON") or sys.executable,
            preview_rows=int(os.getenv("PREVIEW_ROWS", "10")),
        )

    def child_env(self) -> Dict[str, str]:
        """
        Environment for the child, rebuilt from scratch so no inherited
        secrets (API keys, tokens) reach generated code.
        """
        return {
            "PATH": self.path,
            "PYTHONPATH": "",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONIOENCODING": "utf-8",
            "LANG": "C.UTF-8",
            "HOME": os.environ.get("HOME", "/tmp"),
            "OMP_NUM_THREADS": "1",
        }
