"""Host identification and per-family provisioning parameters.

The host family is resolved exactly once from the OS-release identification
file. Everything that differs between families lives in `FAMILY_PARAMETERS`;
no other module branches on the family.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dotenv import dotenv_values

try:
    from hostdeploy.deploy.deploy_errors import UnsupportedHostError
except ImportError:
    from deploy_errors import UnsupportedHostError


DEFAULT_OS_RELEASE_PATH = Path("/etc/os-release")


class HostFamily(str, Enum):
    AMAZON = "amazon"
    DEBIAN = "debian"
    RHEL = "rhel"


class RuntimeInstall(str, Enum):
    PACKAGE = "package"  # native package + enable the docker service
    VENDOR_SCRIPT = "vendor-script"  # https://get.docker.com


@dataclass(frozen=True)
class FamilyParameters:
    package_manager: str
    update_commands: tuple[tuple[str, ...], ...]
    install_command: tuple[str, ...]
    service_account: str
    runtime_install: RuntimeInstall
    runtime_packages: tuple[str, ...] = ()


FAMILY_PARAMETERS: dict[HostFamily, FamilyParameters] = {
    HostFamily.AMAZON: FamilyParameters(
        package_manager="yum",
        update_commands=(("yum", "update", "-y"),),
        install_command=("yum", "install", "-y"),
        service_account="ec2-user",
        runtime_install=RuntimeInstall.PACKAGE,
        runtime_packages=("docker",),
    ),
    HostFamily.DEBIAN: FamilyParameters(
        package_manager="apt-get",
        update_commands=(("apt-get", "update"), ("apt-get", "upgrade", "-y")),
        install_command=("apt-get", "install", "-y"),
        service_account="ubuntu",
        runtime_install=RuntimeInstall.VENDOR_SCRIPT,
    ),
    HostFamily.RHEL: FamilyParameters(
        package_manager="yum",
        update_commands=(("yum", "update", "-y"),),
        install_command=("yum", "install", "-y"),
        service_account="centos",
        runtime_install=RuntimeInstall.VENDOR_SCRIPT,
    ),
}

# Matched against ID first, then each ID_LIKE token in order.
_OS_ID_FAMILIES: dict[str, HostFamily] = {
    "amzn": HostFamily.AMAZON,
    "ubuntu": HostFamily.DEBIAN,
    "debian": HostFamily.DEBIAN,
    "centos": HostFamily.RHEL,
    "rhel": HostFamily.RHEL,
    "rocky": HostFamily.RHEL,
    "almalinux": HostFamily.RHEL,
    "fedora": HostFamily.RHEL,
}


@dataclass(frozen=True)
class HostProfile:
    family: HostFamily
    os_name: str
    package_manager: str
    update_commands: tuple[tuple[str, ...], ...]
    install_command: tuple[str, ...]
    service_account: str
    home_dir: Path
    runtime_install: RuntimeInstall
    runtime_packages: tuple[str, ...] = ()

    def install_cmd(self, packages: list[str] | tuple[str, ...]) -> list[str]:
        return [*self.install_command, *packages]


def read_os_release(path: Path = DEFAULT_OS_RELEASE_PATH) -> dict[str, str]:
    # os-release is shell-compatible KEY="value" lines, which dotenv parses as-is.
    if not path.exists():
        return {}
    return {str(k): str(v or "").strip() for k, v in dotenv_values(path).items() if k}


def classify_host_family(os_release: dict[str, str]) -> HostFamily | None:
    tokens = [os_release.get("ID", "").lower()]
    tokens.extend(os_release.get("ID_LIKE", "").lower().split())
    for token in tokens:
        family = _OS_ID_FAMILIES.get(token.strip())
        if family is not None:
            return family
    return None


def home_dir_for(account: str) -> Path:
    return Path("/root") if account == "root" else Path("/home") / account


def resolve_host_profile(
    os_release_path: Path = DEFAULT_OS_RELEASE_PATH,
    *,
    service_account: str | None = None,
) -> HostProfile:
    """Classify the host and return its immutable profile.

    Raises `UnsupportedHostError` when the identification file is missing or
    names a distribution outside the supported families.
    """
    os_release = read_os_release(os_release_path)
    family = classify_host_family(os_release)
    if family is None:
        raise UnsupportedHostError(
            os_id=os_release.get("ID", ""),
            os_like=os_release.get("ID_LIKE", ""),
            source=os_release_path,
        )

    params = FAMILY_PARAMETERS[family]
    account = (service_account or "").strip() or params.service_account
    return HostProfile(
        family=family,
        os_name=os_release.get("PRETTY_NAME") or os_release.get("NAME") or family.value,
        package_manager=params.package_manager,
        update_commands=params.update_commands,
        install_command=params.install_command,
        service_account=account,
        home_dir=home_dir_for(account),
        runtime_install=params.runtime_install,
        runtime_packages=params.runtime_packages,
    )
