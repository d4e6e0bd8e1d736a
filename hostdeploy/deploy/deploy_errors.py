"""Error taxonomy shared by the provisioner and the deployment runner.

Fatal errors (`UnsupportedHostError`, `MissingArtifactError`, `CommandFailure`,
`HealthCheckFailed`) abort the whole procedure and surface as a non-zero exit
status. `BestEffortFailure` is raised inside optional steps and is always
caught and logged by the step runner.
"""

from __future__ import annotations

import shlex
from pathlib import Path


class HostDeployError(RuntimeError):
    """Base class for all procedure-level failures."""


class UnsupportedHostError(HostDeployError):
    def __init__(self, *, os_id: str, os_like: str = "", source: Path | None = None):
        detail = f"ID={os_id or '<unset>'}"
        if os_like:
            detail += f" ID_LIKE={os_like}"
        where = f" (from {source})" if source is not None else ""
        super().__init__(
            f"Unsupported host operating system: {detail}{where}. "
            "Supported families: Amazon Linux, Ubuntu/Debian, CentOS/RHEL."
        )
        self.os_id = os_id
        self.os_like = os_like


class MissingArtifactError(HostDeployError):
    def __init__(self, *, app_dir: Path, missing: list[str]):
        super().__init__(
            "Required files missing. Please ensure docker-compose files and .env are present "
            f"in {app_dir}: {', '.join(missing)}"
        )
        self.app_dir = app_dir
        self.missing = missing


class CommandFailure(HostDeployError):
    def __init__(self, *, cmd: list[str], returncode: int, stderr: str = ""):
        msg = f"Command failed with exit code {returncode}: {shlex.join(cmd)}"
        err = (stderr or "").strip()
        if err:
            msg += f"\n{err}"
        super().__init__(msg)
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr


class BestEffortFailure(HostDeployError):
    def __init__(self, *, step: str, cause: Exception):
        super().__init__(f"{step} failed (ignored): {cause}")
        self.step = step
        self.cause = cause


class HealthCheckFailed(HostDeployError):
    def __init__(self, *, url: str, last_error: str, log_dump: str = ""):
        super().__init__(f"Health check failed for {url}: {last_error}")
        self.url = url
        self.last_error = last_error
        self.log_dump = log_dump
