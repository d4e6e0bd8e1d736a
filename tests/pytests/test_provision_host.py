from __future__ import annotations

import io
import stat
from pathlib import Path

import pytest

from hostdeploy.deploy.deploy_errors import CommandFailure, UnsupportedHostError
from hostdeploy.deploy.host_templates import render_service_unit
from hostdeploy.deploy.host_utils import StepLog
from hostdeploy.deploy.provision_host import (
    DirectWriter,
    HostProvisioner,
    ProvisionConfig,
    SudoWriter,
    compose_download_url,
    main,
)

UBUNTU = 'PRETTY_NAME="Ubuntu 22.04.4 LTS"\nNAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\nID_LIKE=debian\n'
AMAZON = 'NAME="Amazon Linux"\nID="amzn"\nID_LIKE="fedora"\nPRETTY_NAME="Amazon Linux 2023"\n'
ALPINE = 'NAME="Alpine Linux"\nID=alpine\n'


class Host:
    """Scratch host rooted at tmp_path with a fake PATH lookup and downloader."""

    def __init__(self, tmp_path: Path, os_release: str = UBUNTU, **overrides):
        self.root = tmp_path
        os_release_path = tmp_path / "os-release"
        os_release_path.write_text(os_release, encoding="utf-8")
        defaults = dict(
            os_release_path=os_release_path,
            app_dir=tmp_path / "home" / "app",
            systemd_dir=tmp_path / "systemd",
            logrotate_path=tmp_path / "logrotate.d" / "docker",
            compose_bin=tmp_path / "bin" / "docker-compose",
            use_sudo=False,
            invoking_user="ubuntu",
            python_executable="/usr/bin/python3",
            runner_path=Path("/opt/hostdeploy/deploy_stack.py"),
            system="Linux",
            machine="x86_64",
        )
        defaults.update(overrides)
        self.config = ProvisionConfig(**defaults)
        self.installed: set[str] = set()
        self.downloads: list[str] = []
        self.output = io.StringIO()

    def which(self, name: str) -> str | None:
        if name not in self.installed:
            return None
        return str(self.config.compose_bin) if name == "docker-compose" else f"/usr/bin/{name}"

    def download(self, url: str, dest: Path) -> None:
        self.downloads.append(url)
        dest.write_text("#!/bin/sh\n", encoding="utf-8")

    def provisioner(self, runner, writer=None) -> HostProvisioner:
        return HostProvisioner(
            self.config,
            runner=runner,
            which=self.which,
            writer=writer if writer is not None else DirectWriter(),
            downloader=self.download,
            log=StepLog("provision", stream=self.output, color=False),
        )

    def artifacts(self) -> dict[str, bytes]:
        paths = [
            self.config.systemd_dir / "nodeapp.service",
            self.config.logrotate_path,
            self.config.app_dir / "deploy.sh",
        ]
        return {str(p): p.read_bytes() for p in paths}


def test_first_run_on_ubuntu_installs_and_writes_everything(tmp_path: Path, fake_runner):
    host = Host(tmp_path)
    report = host.provisioner(fake_runner).provision()
    calls = fake_runner.joined()

    assert calls[0] == "apt-get update"
    assert calls[1] == "apt-get upgrade -y"
    assert any(c.startswith("sh ") and c.endswith("get-docker.sh") for c in calls)
    assert "usermod -aG docker ubuntu" in calls
    assert "systemctl daemon-reload" in calls
    assert "systemctl enable nodeapp.service" in calls
    assert "systemctl start nodeapp.service" not in calls
    assert "apt-get install -y htop curl wget git" in calls

    assert host.downloads == [
        "https://get.docker.com",
        "https://github.com/docker/compose/releases/latest/download/docker-compose-linux-x86_64",
    ]
    assert host.config.compose_bin.exists()
    assert report.docker_group_changed is True
    assert report.best_effort_failures == []

    unit = (host.config.systemd_dir / "nodeapp.service").read_text()
    assert "User=ubuntu" in unit
    assert f"WorkingDirectory={host.config.app_dir}" in unit
    assert f"ExecStart={host.config.compose_bin} -f docker-compose.yml -f docker-compose.prod.yml up -d" in unit

    script = host.config.app_dir / "deploy.sh"
    assert script.stat().st_mode & stat.S_IXUSR
    assert "/opt/hostdeploy/deploy_stack.py" in script.read_text()
    assert "rotate 7" in host.config.logrotate_path.read_text()


def test_second_run_skips_installs_and_rewrites_identical_artifacts(tmp_path: Path, make_runner):
    host = Host(tmp_path)
    first = make_runner()
    host.provisioner(first).provision()
    before = host.artifacts()

    host.installed = {"docker", "docker-compose"}
    second = make_runner()
    report = host.provisioner(second).provision()
    calls = second.joined()

    assert not any("get-docker" in c for c in calls)
    assert not any(c.startswith("usermod") for c in calls)
    assert host.downloads.count("https://get.docker.com") == 1
    assert {"Installing Docker", "Installing Docker Compose", "Creating application directory"} <= set(report.skipped)
    assert report.docker_group_changed is False
    assert host.artifacts() == before


def test_unsupported_host_performs_no_mutating_steps(tmp_path: Path, fake_runner):
    host = Host(tmp_path, os_release=ALPINE)
    with pytest.raises(UnsupportedHostError):
        host.provisioner(fake_runner).provision()
    assert fake_runner.calls == []
    assert host.downloads == []
    assert not host.config.systemd_dir.exists()
    assert not host.config.app_dir.exists()


def test_amazon_linux_installs_docker_package_and_enables_daemon(tmp_path: Path, fake_runner):
    host = Host(tmp_path, os_release=AMAZON, app_dir=tmp_path / "home" / "ec2-user" / "app", invoking_user="ec2-user")
    report = host.provisioner(fake_runner).provision()
    calls = fake_runner.joined()

    assert calls[0] == "yum update -y"
    assert "yum install -y docker" in calls
    assert "systemctl enable --now docker" in calls
    assert "usermod -aG docker ec2-user" in calls
    assert "https://get.docker.com" not in host.downloads
    assert "User=ec2-user" in (host.config.systemd_dir / "nodeapp.service").read_text()
    assert report.profile.package_manager == "yum"


def test_default_app_dir_is_under_service_account_home(tmp_path: Path):
    host = Host(tmp_path, app_dir=None)
    provisioner = host.provisioner(lambda *a, **k: None)
    profile = provisioner.resolve_profile()
    assert provisioner.app_dir(profile) == Path("/home/ubuntu/app")


def test_monitoring_tools_failure_is_swallowed(tmp_path: Path, make_runner):
    host = Host(tmp_path)
    runner = make_runner(fail_on="htop")
    report = host.provisioner(runner).provision()

    assert len(report.best_effort_failures) == 1
    assert report.best_effort_failures[0].step == "Installing monitoring tools"
    # Later steps still ran.
    assert host.config.logrotate_path.exists()
    assert (host.config.app_dir / "deploy.sh").exists()


def test_runtime_install_failure_aborts_provisioning(tmp_path: Path, make_runner):
    host = Host(tmp_path)
    runner = make_runner(fail_on="get-docker.sh")
    with pytest.raises(CommandFailure):
        host.provisioner(runner).provision()
    assert not any(c.startswith("usermod") for c in runner.joined())
    assert not host.config.logrotate_path.exists()


def test_skip_system_update(tmp_path: Path, fake_runner):
    host = Host(tmp_path, skip_system_update=True)
    host.provisioner(fake_runner).provision()
    assert "apt-get update" not in fake_runner.joined()


def test_sudo_mode_prefixes_commands_and_writes_through_tee(tmp_path: Path, fake_runner):
    host = Host(tmp_path, use_sudo=True)
    host.installed = {"docker", "docker-compose"}
    host.provisioner(fake_runner, writer=SudoWriter(fake_runner)).provision()
    calls = fake_runner.joined()

    unit_path = str(host.config.systemd_dir / "nodeapp.service")
    assert calls[0] == "sudo apt-get update"
    assert f"sudo tee {unit_path}" in calls
    assert "sudo systemctl daemon-reload" in calls
    assert f"sudo chown ubuntu:ubuntu {host.config.app_dir / 'deploy.sh'}" in calls
    assert f"sudo chmod 755 {host.config.app_dir / 'deploy.sh'}" in calls
    assert fake_runner.inputs[unit_path] == render_service_unit(
        description="nodeapp application stack",
        working_dir=host.config.app_dir,
        compose_bin=str(host.config.compose_bin),
        run_as="ubuntu",
    )


def test_compose_download_url_for_pinned_release():
    assert (
        compose_download_url(release="v2.27.0", system="Linux", machine="aarch64")
        == "https://github.com/docker/compose/releases/download/v2.27.0/docker-compose-linux-aarch64"
    )


def test_main_exits_1_on_unsupported_host(tmp_path: Path, capsys):
    os_release = tmp_path / "os-release"
    os_release.write_text(ALPINE, encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["--os-release", str(os_release), "--no-sudo", "--config", str(tmp_path / "missing.env")])
    assert exc.value.code == 1
    assert "Unsupported host operating system" in capsys.readouterr().err


def test_main_exits_2_on_invalid_settings_file(tmp_path: Path, capsys):
    settings = tmp_path / ".env.deploy"
    settings.write_text("NOT_A_SETTING=1\n", encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(settings)])
    assert exc.value.code == 2
    assert "Unknown key(s): NOT_A_SETTING" in capsys.readouterr().err


def test_main_exits_1_on_filesystem_error(tmp_path: Path, monkeypatch, capsys):
    os_release = tmp_path / "os-release"
    os_release.write_text(UBUNTU, encoding="utf-8")

    def denied(self):
        raise PermissionError(13, "Permission denied", "/etc/systemd/system/nodeapp.service")

    monkeypatch.setattr(HostProvisioner, "provision", denied)
    with pytest.raises(SystemExit) as exc:
        main(["--os-release", str(os_release), "--no-sudo", "--config", str(tmp_path / "missing.env")])
    assert exc.value.code == 1
    assert "Permission denied" in capsys.readouterr().err
