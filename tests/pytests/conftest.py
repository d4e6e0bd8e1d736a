from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    # Allow tests to import `hostdeploy.*` as a package.
    repo_root = Path(__file__).parents[2]
    sys.path.append(str(repo_root))


class FakeRunner:
    """Records every command; fails those whose joined text contains a configured fragment."""

    def __init__(self, *, fail_on: str | None = None, outputs: dict[str, str] | None = None):
        self.fail_on = fail_on
        self.outputs = outputs or {}
        self.calls: list[list[str]] = []
        self.inputs: dict[str, str] = {}

    def __call__(self, cmd, *, check=True, capture_output=False, input_text=None, cwd=None):
        from hostdeploy.deploy.deploy_errors import CommandFailure

        self.calls.append(list(cmd))
        joined = " ".join(cmd)
        if input_text is not None:
            self.inputs[cmd[-1]] = input_text
        stdout = ""
        for fragment, out in self.outputs.items():
            if fragment in joined:
                stdout = out
        if self.fail_on and self.fail_on in joined:
            if check:
                raise CommandFailure(cmd=list(cmd), returncode=1, stderr="boom")
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="boom")
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def joined(self) -> list[str]:
        return [" ".join(c) for c in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_runner():
    return FakeRunner
