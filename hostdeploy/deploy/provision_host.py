#!/usr/bin/env python3
"""Prepare a fresh VM to run and auto-restart the containerized application stack.

Run once per host (safe to re-run). Every step is a convergence step: either
it is skipped because the host already satisfies it (docker, docker-compose,
app directory) or it overwrites a declaratively rendered artifact (systemd
unit, logrotate policy, deploy launcher). Two runs converge to the same state.

Security note: this script shells out to the package manager, `systemctl`,
`usermod` and the Docker vendor install script, prefixed with `sudo` unless
running as root.
"""

from __future__ import annotations

import argparse
import getpass
import os
import platform
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

# Allow running as `python hostdeploy/deploy/provision_host.py` without installing.
sys.path.append(str(Path(__file__).parent))

try:
    from hostdeploy.deploy.deploy_errors import BestEffortFailure, HostDeployError
    from hostdeploy.deploy.env_schema import (
        DEPLOY_SETTINGS_FILENAME,
        EnvValidationError,
        SettingsResolver,
        VarsEnum,
    )
    from hostdeploy.deploy.host_profile import (
        DEFAULT_OS_RELEASE_PATH,
        HostProfile,
        RuntimeInstall,
        resolve_host_profile,
    )
    from hostdeploy.deploy.host_templates import (
        render_deploy_launcher,
        render_logrotate_policy,
        render_service_unit,
    )
    from hostdeploy.deploy.host_utils import (
        CommandRunner,
        StepLog,
        configure_logging,
        download_file,
        needs_sudo,
        privileged,
        run_command,
        which,
    )
except ImportError:
    from deploy_errors import BestEffortFailure, HostDeployError
    from env_schema import DEPLOY_SETTINGS_FILENAME, EnvValidationError, SettingsResolver, VarsEnum
    from host_profile import DEFAULT_OS_RELEASE_PATH, HostProfile, RuntimeInstall, resolve_host_profile
    from host_templates import render_deploy_launcher, render_logrotate_policy, render_service_unit
    from host_utils import (
        CommandRunner,
        StepLog,
        configure_logging,
        download_file,
        needs_sudo,
        privileged,
        run_command,
        which,
    )


DOCKER_INSTALL_SCRIPT_URL = "https://get.docker.com"
COMPOSE_RELEASES_URL = "https://github.com/docker/compose/releases"
DOCKER_GROUP = "docker"
AUX_TOOLS: tuple[str, ...] = ("htop", "curl", "wget", "git")

SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")
LOGROTATE_POLICY_PATH = Path("/etc/logrotate.d/docker")
APP_DIR_NAME = "app"
DEPLOY_SCRIPT_NAME = "deploy.sh"
DEPLOY_RUNNER_PATH = Path(__file__).resolve().with_name("deploy_stack.py")


def compose_download_url(*, release: str, system: str, machine: str) -> str:
    asset = f"docker-compose-{system.lower()}-{machine}"
    if not release or release == "latest":
        return f"{COMPOSE_RELEASES_URL}/latest/download/{asset}"
    return f"{COMPOSE_RELEASES_URL}/download/{release}/{asset}"


class HostWriter(Protocol):
    def ensure_dir(self, path: Path, *, owner: str | None = None) -> None: ...
    def write_file(self, path: Path, content: str, *, mode: int = 0o644, owner: str | None = None) -> None: ...
    def install_executable(self, source: Path, dest: Path) -> None: ...


class DirectWriter:
    """Writes artifacts with plain filesystem calls (running as root, or against a scratch root)."""

    def __init__(self, *, chown: bool = False):
        self._chown = chown

    def _maybe_chown(self, path: Path, owner: str | None) -> None:
        if not (self._chown and owner):
            return
        try:
            shutil.chown(path, user=owner, group=owner)
        except LookupError as exc:
            raise HostDeployError(f"Service account {owner!r} does not exist on this host") from exc

    def ensure_dir(self, path: Path, *, owner: str | None = None) -> None:
        path.mkdir(parents=True, exist_ok=True)
        self._maybe_chown(path, owner)

    def write_file(self, path: Path, content: str, *, mode: int = 0o644, owner: str | None = None) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        path.chmod(mode)
        self._maybe_chown(path, owner)

    def install_executable(self, source: Path, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        dest.chmod(0o755)


class SudoWriter:
    """Writes root-owned artifacts through `sudo` (`tee`, `install`, `chown`)."""

    def __init__(self, runner: CommandRunner):
        self._runner = runner

    def ensure_dir(self, path: Path, *, owner: str | None = None) -> None:
        self._runner(["sudo", "mkdir", "-p", str(path)])
        if owner:
            self._runner(["sudo", "chown", f"{owner}:{owner}", str(path)])

    def write_file(self, path: Path, content: str, *, mode: int = 0o644, owner: str | None = None) -> None:
        # capture_output keeps tee's echo of the content off the terminal.
        self._runner(["sudo", "tee", str(path)], input_text=content, capture_output=True)
        self._runner(["sudo", "chmod", format(mode, "o"), str(path)])
        if owner:
            self._runner(["sudo", "chown", f"{owner}:{owner}", str(path)])

    def install_executable(self, source: Path, dest: Path) -> None:
        self._runner(["sudo", "install", "-m", "0755", str(source), str(dest)])


@dataclass
class ConvergeStep:
    name: str
    apply: Callable[[], None]
    is_satisfied: Callable[[], bool] | None = None
    best_effort: bool = False
    icon: str = "🔧"
    satisfied_message: str = "already satisfied"


@dataclass
class ProvisionConfig:
    os_release_path: Path = DEFAULT_OS_RELEASE_PATH
    service_account: str | None = None
    app_dir: Path | None = None
    service_name: str = "nodeapp"
    compose_bin: Path = Path("/usr/local/bin/docker-compose")
    compose_release: str = "latest"
    skip_system_update: bool = False
    use_sudo: bool = True
    invoking_user: str = field(default_factory=getpass.getuser)
    systemd_dir: Path = SYSTEMD_UNIT_DIR
    logrotate_path: Path = LOGROTATE_POLICY_PATH
    python_executable: str = sys.executable
    runner_path: Path = DEPLOY_RUNNER_PATH
    system: str = field(default_factory=platform.system)
    machine: str = field(default_factory=platform.machine)


@dataclass
class ProvisionReport:
    profile: HostProfile
    app_dir: Path
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    best_effort_failures: list[BestEffortFailure] = field(default_factory=list)
    artifacts: dict[str, Path] = field(default_factory=dict)
    docker_group_changed: bool = False
    versions: dict[str, str] = field(default_factory=dict)


def converge(steps: list[ConvergeStep], *, log: StepLog, report: ProvisionReport) -> None:
    for step in steps:
        log.step(step.name, icon=step.icon)
        if step.is_satisfied is not None and step.is_satisfied():
            log.ok(step.satisfied_message)
            report.skipped.append(step.name)
            continue
        try:
            step.apply()
        except (HostDeployError, OSError) as exc:
            if not step.best_effort:
                raise
            failure = BestEffortFailure(step=step.name, cause=exc)
            log.warn(str(failure))
            report.best_effort_failures.append(failure)
            continue
        report.applied.append(step.name)


class HostProvisioner:
    def __init__(
        self,
        config: ProvisionConfig,
        *,
        runner: CommandRunner = run_command,
        which: Callable[[str], str | None] = which,
        writer: HostWriter | None = None,
        downloader: Callable[[str, Path], None] = download_file,
        log: StepLog | None = None,
    ):
        self.config = config
        self.runner = runner
        self.which = which
        self.writer = writer if writer is not None else (SudoWriter(runner) if config.use_sudo else DirectWriter())
        self.downloader = downloader
        self.log = log if log is not None else StepLog("provision")

    def _sudo(self, cmd: list[str] | tuple[str, ...]) -> list[str]:
        return privileged(list(cmd), use_sudo=self.config.use_sudo)

    def resolve_profile(self) -> HostProfile:
        return resolve_host_profile(self.config.os_release_path, service_account=self.config.service_account)

    def app_dir(self, profile: HostProfile) -> Path:
        return self.config.app_dir if self.config.app_dir is not None else profile.home_dir / APP_DIR_NAME

    def unit_path(self) -> Path:
        return self.config.systemd_dir / f"{self.config.service_name}.service"

    def compose_path(self) -> str:
        return self.which("docker-compose") or str(self.config.compose_bin)

    def plan(self, profile: HostProfile, report: ProvisionReport) -> list[ConvergeStep]:
        app_dir = report.app_dir
        steps: list[ConvergeStep] = []
        if not self.config.skip_system_update:
            steps.append(
                ConvergeStep(
                    name="Updating system packages",
                    icon="📦",
                    apply=lambda: self._update_system(profile),
                )
            )
        steps.extend(
            [
                ConvergeStep(
                    name="Installing Docker",
                    icon="🐳",
                    apply=lambda: self._install_runtime(profile, report),
                    is_satisfied=lambda: self.which("docker") is not None,
                    satisfied_message="Docker already installed",
                ),
                ConvergeStep(
                    name="Installing Docker Compose",
                    icon="🔧",
                    apply=self._install_compose,
                    is_satisfied=lambda: self.which("docker-compose") is not None,
                    satisfied_message="Docker Compose already installed",
                ),
                ConvergeStep(
                    name="Creating application directory",
                    icon="📁",
                    apply=lambda: self.writer.ensure_dir(app_dir, owner=profile.service_account),
                    is_satisfied=app_dir.is_dir,
                    satisfied_message=f"{app_dir} already exists",
                ),
                ConvergeStep(
                    name="Creating systemd service",
                    icon="⚙️",
                    apply=lambda: self._install_service_unit(profile, app_dir, report),
                ),
                ConvergeStep(
                    name="Installing monitoring tools",
                    icon="📊",
                    apply=lambda: self.runner(self._sudo(profile.install_cmd(AUX_TOOLS))),
                    best_effort=True,
                ),
                ConvergeStep(
                    name="Configuring log rotation",
                    icon="📝",
                    apply=lambda: self._configure_logrotate(report),
                ),
                ConvergeStep(
                    name="Creating deployment script",
                    icon="📝",
                    apply=lambda: self._write_deploy_script(profile, app_dir, report),
                ),
            ]
        )
        return steps

    def _update_system(self, profile: HostProfile) -> None:
        for cmd in profile.update_commands:
            self.runner(self._sudo(cmd))

    def _install_runtime(self, profile: HostProfile, report: ProvisionReport) -> None:
        if profile.runtime_install == RuntimeInstall.PACKAGE:
            self.runner(self._sudo(profile.install_cmd(profile.runtime_packages)))
            self.runner(self._sudo(["systemctl", "enable", "--now", "docker"]))
        else:
            with tempfile.TemporaryDirectory(prefix="hostdeploy-") as tmp:
                script = Path(tmp) / "get-docker.sh"
                self.downloader(DOCKER_INSTALL_SCRIPT_URL, script)
                self.runner(self._sudo(["sh", str(script)]))
        # Group membership only applies to the account's next login session.
        self.runner(self._sudo(["usermod", "-aG", DOCKER_GROUP, self.config.invoking_user]))
        report.docker_group_changed = True

    def _install_compose(self) -> None:
        url = compose_download_url(
            release=self.config.compose_release,
            system=self.config.system,
            machine=self.config.machine,
        )
        self.log.info(f"Downloading {url}")
        with tempfile.TemporaryDirectory(prefix="hostdeploy-") as tmp:
            binary = Path(tmp) / "docker-compose"
            self.downloader(url, binary)
            self.writer.install_executable(binary, self.config.compose_bin)

    def _install_service_unit(self, profile: HostProfile, app_dir: Path, report: ProvisionReport) -> None:
        unit_path = self.unit_path()
        content = render_service_unit(
            description=f"{self.config.service_name} application stack",
            working_dir=app_dir,
            compose_bin=self.compose_path(),
            run_as=profile.service_account,
        )
        self.writer.write_file(unit_path, content)
        self.runner(self._sudo(["systemctl", "daemon-reload"]))
        self.runner(self._sudo(["systemctl", "enable", unit_path.name]))
        report.artifacts["service_unit"] = unit_path

    def _configure_logrotate(self, report: ProvisionReport) -> None:
        self.writer.write_file(self.config.logrotate_path, render_logrotate_policy())
        report.artifacts["logrotate_policy"] = self.config.logrotate_path

    def _write_deploy_script(self, profile: HostProfile, app_dir: Path, report: ProvisionReport) -> None:
        script_path = app_dir / DEPLOY_SCRIPT_NAME
        content = render_deploy_launcher(
            app_dir=app_dir,
            python_executable=self.config.python_executable,
            runner_path=self.config.runner_path,
        )
        self.writer.write_file(script_path, content, mode=0o755, owner=profile.service_account)
        report.artifacts["deploy_script"] = script_path

    def collect_versions(self, report: ProvisionReport) -> None:
        for label, cmd in (("Docker", ["docker", "--version"]), ("Docker Compose", [self.compose_path(), "--version"])):
            result = self.runner(cmd, check=False, capture_output=True)
            out = str(result.stdout or "").strip()
            report.versions[label] = out if result.returncode == 0 and out else "unavailable"

    def provision(self) -> ProvisionReport:
        # Profile first: nothing below may run on an unsupported host.
        profile = self.resolve_profile()
        self.log.info(f"Detected {profile.os_name} ({profile.family.value}, {profile.package_manager})", icon="🧭")

        report = ProvisionReport(profile=profile, app_dir=self.app_dir(profile))
        converge(self.plan(profile, report), log=self.log, report=report)
        self.collect_versions(report)
        return report


def print_summary(report: ProvisionReport, *, log: StepLog) -> None:
    log.ok("Setup completed successfully!")
    log.info("Installed versions:", icon="📋")
    for label, version in report.versions.items():
        log.info(f"{label}: {version}", icon="  ")
    log.info(f"Application directory: {report.app_dir}", icon="📁")
    if "deploy_script" in report.artifacts:
        log.info(f"Deployment script: {report.artifacts['deploy_script']}", icon="🚀")
    if report.docker_group_changed:
        log.warn("Please log out and log back in for Docker group changes to take effect.")
    log.info("Next steps:", icon="🔧")
    log.info(f"1. Place docker-compose.yml, docker-compose.prod.yml and .env in {report.app_dir}", icon="  ")
    log.info("2. Make sure the database configured in .env is reachable from this host", icon="  ")
    log.info("3. Trigger a release from CI, or deploy manually:", icon="  ")
    log.info(f"   cd {report.app_dir} && ./{DEPLOY_SCRIPT_NAME}", icon="💡")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Prepare this host to run the application stack")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Settings dotenv file (default: ./{DEPLOY_SETTINGS_FILENAME} if present)",
    )
    parser.add_argument(
        "--os-release",
        default=str(DEFAULT_OS_RELEASE_PATH),
        help="Host identification file (default: /etc/os-release)",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Service account the stack runs as. Resolution: CLI -> HOSTDEPLOY_APP_USER -> host family default",
    )
    parser.add_argument(
        "--app-dir",
        default=None,
        help="Application directory. Resolution: CLI -> HOSTDEPLOY_APP_DIR -> <service account home>/app",
    )
    parser.add_argument("--service-name", default=None, help="systemd unit name without suffix (default: nodeapp)")
    parser.add_argument("--compose-bin", default=None, help="Install path for docker-compose")
    parser.add_argument("--compose-release", default=None, help="docker-compose release tag (default: latest)")
    parser.add_argument("--skip-system-update", action="store_true", help="Do not update/upgrade system packages")
    parser.add_argument("--no-sudo", action="store_true", help="Run privileged commands without sudo")
    parser.add_argument("--verbose", action="store_true", help="Log every executed command")

    args = parser.parse_args(argv)
    configure_logging(verbose=bool(args.verbose))
    log = StepLog("provision")

    config_path = Path(args.config) if args.config else Path.cwd() / DEPLOY_SETTINGS_FILENAME
    try:
        settings = SettingsResolver(dotenv_path=config_path)
        resolved_app_dir = settings.get(VarsEnum.APP_DIR, args.app_dir)
        config = ProvisionConfig(
            os_release_path=Path(args.os_release),
            service_account=settings.get(VarsEnum.APP_USER, args.user) or None,
            app_dir=Path(resolved_app_dir).expanduser() if resolved_app_dir else None,
            service_name=settings.get(VarsEnum.SERVICE_NAME, args.service_name),
            compose_bin=Path(settings.get(VarsEnum.COMPOSE_BIN, args.compose_bin)),
            compose_release=settings.get(VarsEnum.COMPOSE_RELEASE, args.compose_release),
            skip_system_update=settings.get_bool(VarsEnum.SKIP_SYSTEM_UPDATE, bool(args.skip_system_update)),
            use_sudo=needs_sudo(no_sudo=settings.get_bool(VarsEnum.NO_SUDO, bool(args.no_sudo))),
        )
    except EnvValidationError as e:
        print(e.format(), file=sys.stderr)
        raise SystemExit(2)

    writer = None if config.use_sudo else DirectWriter(chown=os.geteuid() == 0)
    provisioner = HostProvisioner(config, writer=writer, log=log)
    log.info("Setting up this host for container deployment...")
    try:
        report = provisioner.provision()
    except (HostDeployError, OSError) as exc:
        log.error(str(exc))
        raise SystemExit(1)

    print_summary(report, log=log)


if __name__ == "__main__":
    main()
