"""Renderers for the declarative host artifacts written by the provisioner.

Each renderer is a pure function of its inputs so repeated provisioning runs
produce byte-identical files.
"""

from __future__ import annotations

import shlex
from pathlib import Path

COMPOSE_BASE_FILE = "docker-compose.yml"
COMPOSE_PROD_FILE = "docker-compose.prod.yml"
RUNTIME_ENV_FILE = ".env"
STACK_FILES: tuple[str, str] = (COMPOSE_BASE_FILE, COMPOSE_PROD_FILE)

DOCKER_CONTAINER_LOG_GLOB = "/var/lib/docker/containers/*/*.log"


def compose_file_args(compose_files: tuple[str, ...] | list[str] = STACK_FILES) -> list[str]:
    args: list[str] = []
    for compose_file in compose_files:
        args.extend(["-f", compose_file])
    return args


def render_service_unit(
    *,
    description: str,
    working_dir: Path,
    compose_bin: str,
    run_as: str,
) -> str:
    compose = " ".join([compose_bin, *compose_file_args()])
    return "\n".join(
        [
            "[Unit]",
            f"Description={description}",
            "Requires=docker.service",
            "After=docker.service",
            "",
            "[Service]",
            "Type=oneshot",
            "RemainAfterExit=yes",
            f"WorkingDirectory={working_dir}",
            f"ExecStart={compose} up -d",
            f"ExecStop={compose} down",
            f"User={run_as}",
            f"Group={run_as}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
    )


def render_logrotate_policy(*, log_glob: str = DOCKER_CONTAINER_LOG_GLOB) -> str:
    return "\n".join(
        [
            f"{log_glob} {{",
            "    rotate 7",
            "    daily",
            "    compress",
            "    size=1M",
            "    missingok",
            "    delaycompress",
            "    copytruncate",
            "}",
            "",
        ]
    )


def render_deploy_launcher(*, app_dir: Path, python_executable: str, runner_path: Path) -> str:
    """Shell launcher placed in the app dir so operators and CI can run `./deploy.sh`."""
    app_dir_q = shlex.quote(str(app_dir))
    return "\n".join(
        [
            "#!/bin/bash",
            "# Written by hostdeploy-provision; re-running provisioning overwrites this file.",
            "set -e",
            "",
            f"cd {app_dir_q}",
            f'exec {shlex.quote(python_executable)} {shlex.quote(str(runner_path))} --app-dir {app_dir_q} "$@"',
            "",
        ]
    )
