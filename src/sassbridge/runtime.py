"""Runtime discovery and environment checks for the worker script.

The worker runs under a Python interpreter that has libsass installed. That
interpreter is usually the current one, but a different one can be
configured explicitly or through SASSBRIDGE_RUNTIME.
"""

import logging
import os
import platform
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from sassbridge.exceptions import CompilerDependencyError, RuntimeNotFoundError, WorkerNotFoundError

logger = logging.getLogger(__name__)

RUNTIME_ENV_VAR = "SASSBRIDGE_RUNTIME"
COMPILER_MODULE = "sass"
COMPILER_DISTRIBUTION = "libsass"

# Runs a command and reports whether it exited successfully
Probe = Callable[[Sequence[str]], bool]


def default_worker_path() -> Path:
    return Path(__file__).resolve().parent / "worker.py"


def runtime_candidates() -> list[str]:
    """Ordered list of interpreters to try."""
    candidates: list[str] = []
    if sys.executable:
        candidates.append(sys.executable)
    candidates += ["python3", "python"]
    if platform.system() == "Windows":
        local_app_data = os.environ.get("LOCALAPPDATA", "")
        if local_app_data:
            candidates.append(str(Path(local_app_data) / "Programs" / "Python" / "Launcher" / "py.exe"))
        candidates += [
            "C:\\Program Files\\Python312\\python.exe",
            "C:\\Program Files\\Python311\\python.exe",
        ]
    else:
        candidates += [
            "/usr/local/bin/python3",
            "/usr/bin/python3",
            "/opt/homebrew/bin/python3",
        ]
    # Drop duplicates while keeping order
    return list(dict.fromkeys(candidates))


def verify_runtime(runtime: str, probe: Probe) -> None:
    """Raise RuntimeNotFoundError unless runtime answers --version."""
    if not probe([runtime, "--version"]):
        raise RuntimeNotFoundError(
            f"Python runtime not found at {runtime}. Check the path passed to your Compiler constructor or set in {RUNTIME_ENV_VAR}."
        )


def find_runtime(probe: Probe, candidates: Sequence[str] | None = None) -> str:
    """Return the first candidate that answers --version.

    Raises:
        RuntimeNotFoundError: If no candidate works
    """
    override = os.environ.get(RUNTIME_ENV_VAR, "").strip()
    if override:
        logger.debug(f"Using runtime from {RUNTIME_ENV_VAR}: {override}")
        verify_runtime(override, probe)
        return override

    for candidate in candidates if candidates is not None else runtime_candidates():
        if probe([candidate, "--version"]):
            logger.debug(f"Found runtime: {candidate}")
            return candidate

    raise RuntimeNotFoundError(
        "".join(
            [
                "Python runtime not found. ",
                f"Please install Python >= 3.10 with the {COMPILER_DISTRIBUTION} package and make sure it's in PATH, ",
                f"set {RUNTIME_ENV_VAR}, or pass its full path to your Compiler constructor.",
            ]
        )
    )


def check_environment(runtime: str, worker_path: Path, probe: Probe) -> None:
    """Fail fast when the worker script or the compiler package is missing.

    Raises:
        WorkerNotFoundError: If the worker script does not exist
        CompilerDependencyError: If the runtime cannot import the compiler
    """
    if not worker_path.is_file():
        raise WorkerNotFoundError(f"worker.py not found at {worker_path}")

    if not probe([runtime, "-c", f"import {COMPILER_MODULE}"]):
        raise CompilerDependencyError(f"{COMPILER_DISTRIBUTION} not found. Run `{runtime} -m pip install {COMPILER_DISTRIBUTION}`.")
