#!/usr/bin/env python3
"""Shared host command utilities: subprocess wrapper, sudo prefixing, console steps."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Protocol, TextIO

import requests

try:
    from hostdeploy.deploy.deploy_errors import CommandFailure, HostDeployError
except ImportError:
    from deploy_errors import CommandFailure, HostDeployError

logger = logging.getLogger("hostdeploy")

STEP_COLOR = "\033[95m"
COLOR_RESET = "\033[0m"

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class CommandRunner(Protocol):
    def __call__(
        self,
        cmd: list[str],
        *,
        check: bool = True,
        capture_output: bool = False,
        input_text: str | None = None,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]: ...


def run_command(
    cmd: list[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    input_text: str | None = None,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a host command and raise `CommandFailure` on a non-zero exit when `check` is set.

    Output is streamed to the terminal unless `capture_output` is requested;
    stderr is always captured so it can be attached to the failure.
    """
    logger.debug("exec: %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
            input=input_text,
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        # Missing executable behaves like the shell's "command not found".
        if not check:
            return subprocess.CompletedProcess(cmd, 127, stdout="", stderr=str(exc))
        raise CommandFailure(cmd=cmd, returncode=127, stderr=str(exc)) from exc

    if result.returncode != 0 and check:
        if capture_output and result.stdout:
            print(result.stdout.rstrip(), file=sys.stderr)
        raise CommandFailure(cmd=cmd, returncode=result.returncode, stderr=str(result.stderr or ""))
    return result


def needs_sudo(*, no_sudo: bool = False) -> bool:
    if no_sudo:
        return False
    return os.geteuid() != 0


def privileged(cmd: list[str], *, use_sudo: bool) -> list[str]:
    return ["sudo", *cmd] if use_sudo else list(cmd)


def which(binary: str) -> str | None:
    return shutil.which(binary)


def download_file(url: str, dest: Path, *, timeout: float = 60.0) -> None:
    """Stream `url` into `dest`, following redirects (GitHub release assets redirect)."""
    logger.debug("download: %s -> %s", url, dest)
    try:
        with requests.get(url, stream=True, timeout=timeout, allow_redirects=True) as resp:
            resp.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
    except requests.RequestException as exc:
        raise HostDeployError(f"Download failed: {url}: {exc}") from exc


def configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(name)s] %(levelname)s %(message)s",
    )


class StepLog:
    """Numbered, prefixed progress lines for an operator watching a terminal."""

    def __init__(self, prefix: str, *, stream: TextIO | None = None, color: bool | None = None):
        self.prefix = prefix
        self.step_number = 0
        self._stream = stream
        self._color = color

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _use_color(self) -> bool:
        if self._color is not None:
            return self._color
        return bool(getattr(self.stream, "isatty", lambda: False)())

    def step(self, message: str, *, icon: str = "🚀") -> None:
        self.step_number += 1
        line = f"[{self.prefix}] {icon} Step {self.step_number}: {message}"
        if self._use_color():
            line = f"{STEP_COLOR}{line}{COLOR_RESET}"
        print(line, file=self.stream)

    def info(self, message: str, *, icon: str = "ℹ️") -> None:
        print(f"[{self.prefix}] {icon} {message}", file=self.stream)

    def ok(self, message: str) -> None:
        self.info(message, icon="✅")

    def warn(self, message: str) -> None:
        print(f"[{self.prefix}] ⚠️  {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        print(f"[{self.prefix}] ❌ {message}", file=sys.stderr)
