#!/usr/bin/env python3
"""Replace the running application stack with an updated one and verify its health.

Run from (or pointed at) the application directory that holds the stack
definition files and the runtime `.env`. Steps are strictly ordered and any
failing compose command aborts the remainder:

    pull -> down -> up -d -> image prune (best-effort) -> health probe

There is no automatic rollback: when the probe fails the new stack is left
running, its recent logs are printed and the process exits non-zero.
"""

from __future__ import annotations

import argparse
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import requests
import urllib3
from dotenv import dotenv_values

# Allow running as `python hostdeploy/deploy/deploy_stack.py` (the launcher written by provisioning).
sys.path.append(str(Path(__file__).parent))

try:
    from hostdeploy.deploy import docker_compose_helpers as compose_helpers
    from hostdeploy.deploy.deploy_errors import (
        BestEffortFailure,
        CommandFailure,
        HealthCheckFailed,
        HostDeployError,
        MissingArtifactError,
    )
    from hostdeploy.deploy.env_schema import DEPLOY_SETTINGS_FILENAME, EnvValidationError, SettingsResolver, VarsEnum
    from hostdeploy.deploy.host_templates import RUNTIME_ENV_FILE, STACK_FILES
    from hostdeploy.deploy.host_utils import CommandRunner, StepLog, configure_logging, run_command, which
except ImportError:
    import docker_compose_helpers as compose_helpers
    from deploy_errors import BestEffortFailure, CommandFailure, HealthCheckFailed, HostDeployError, MissingArtifactError
    from env_schema import DEPLOY_SETTINGS_FILENAME, EnvValidationError, SettingsResolver, VarsEnum
    from host_templates import RUNTIME_ENV_FILE, STACK_FILES
    from host_utils import CommandRunner, StepLog, configure_logging, run_command, which


REQUIRED_FILES: tuple[str, ...] = (*STACK_FILES, RUNTIME_ENV_FILE)
MIN_PROBE_INTERVAL = 0.1
MAX_PROBE_INTERVAL = 10.0


class DeployState(str, Enum):
    IDLE = "idle"
    PREFLIGHT_CHECKED = "preflight_checked"
    IMAGES_PULLED = "images_pulled"
    OLD_STACK_STOPPED = "old_stack_stopped"
    NEW_STACK_STARTED = "new_stack_started"
    PROBED = "probed"
    SUCCEEDED = "succeeded"
    FAILED_UNHEALTHY = "failed_unhealthy"
    FAILED_COMMAND = "failed_command"


TERMINAL_STATES = frozenset({DeployState.SUCCEEDED, DeployState.FAILED_UNHEALTHY, DeployState.FAILED_COMMAND})


@dataclass
class DeploymentAttempt:
    app_dir: Path
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: DeployState = DeployState.IDLE
    history: list[DeployState] = field(default_factory=lambda: [DeployState.IDLE])
    declared_images: list[str] = field(default_factory=list)
    prior_containers: list[str] = field(default_factory=list)
    healthy: bool | None = None
    probe_attempts: int = 0
    log_dump: str = ""
    error: str = ""

    def transition(self, state: DeployState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Deployment already finished in state {self.state.value}")
        self.state = state
        self.history.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state == DeployState.SUCCEEDED


@dataclass
class HealthProbeConfig:
    url: str = "http://localhost:3000/health"
    timeout: float = 60.0
    interval: float = 2.0
    backoff: float = 1.5
    max_interval: float = MAX_PROBE_INTERVAL
    request_timeout: float = 5.0
    grace_period: float = 0.0
    insecure: bool = False


@dataclass
class ProbeResult:
    healthy: bool
    attempts: int
    detail: str


@dataclass
class DeployConfig:
    app_dir: Path
    compose_bin: str = "/usr/local/bin/docker-compose"
    log_tail: int = 50
    health: HealthProbeConfig = field(default_factory=HealthProbeConfig)


def find_missing_artifacts(app_dir: Path, required: tuple[str, ...] = REQUIRED_FILES) -> list[str]:
    return [name for name in required if not (app_dir / name).is_file()]


def probe_health_once(
    url: str,
    *,
    request_timeout: float,
    verify: bool = True,
    http_get: Callable[..., Any] = requests.get,
) -> tuple[bool, str]:
    """One bounded GET. Any 2xx counts as healthy."""
    try:
        response = http_get(url, timeout=request_timeout, verify=verify)
    except requests.RequestException as exc:
        return False, str(exc)
    status = int(response.status_code)
    if 200 <= status < 300:
        return True, f"HTTP {status}"
    return False, f"HTTP {status}"


def wait_for_healthy(
    cfg: HealthProbeConfig,
    *,
    http_get: Callable[..., Any] = requests.get,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProbeResult:
    """Poll the health endpoint with growing intervals until healthy or `cfg.timeout` elapses.

    Always probes at least once, and never sleeps past the deadline. Intervals
    below MIN_PROBE_INTERVAL are raised to it.
    """
    deadline = clock() + cfg.timeout
    delay = max(cfg.interval, MIN_PROBE_INTERVAL)
    attempts = 0
    while True:
        attempts += 1
        healthy, detail = probe_health_once(
            cfg.url,
            request_timeout=cfg.request_timeout,
            verify=not cfg.insecure,
            http_get=http_get,
        )
        if healthy:
            return ProbeResult(healthy=True, attempts=attempts, detail=detail)
        remaining = deadline - clock()
        if remaining <= 0:
            return ProbeResult(healthy=False, attempts=attempts, detail=detail)
        sleep(min(delay, remaining))
        delay = min(delay * cfg.backoff, cfg.max_interval)


class DeploymentRunner:
    def __init__(
        self,
        config: DeployConfig,
        *,
        runner: CommandRunner = run_command,
        http_get: Callable[..., Any] = requests.get,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        log: StepLog | None = None,
    ):
        self.config = config
        self.runner = runner
        self.http_get = http_get
        self.sleep = sleep
        self.clock = clock
        self.log = log if log is not None else StepLog("deploy")
        self.attempt = DeploymentAttempt(app_dir=config.app_dir)

    def _compose(self, *args: str) -> list[str]:
        return compose_helpers.build_compose_cmd(self.config.compose_bin, *args)

    def _run_compose(self, *args: str) -> None:
        self.runner(self._compose(*args), cwd=self.config.app_dir)

    def preflight(self) -> None:
        missing = find_missing_artifacts(self.config.app_dir)
        if missing:
            raise MissingArtifactError(app_dir=self.config.app_dir, missing=missing)
        self.attempt.transition(DeployState.PREFLIGHT_CHECKED)

    def _declared_images(self) -> list[str]:
        # Informational only: compose reads these files itself, in whatever encoding they are in.
        try:
            env_path = self.config.app_dir / RUNTIME_ENV_FILE
            runtime_env = {k: str(v or "") for k, v in dotenv_values(env_path).items() if k}
            compose_config = compose_helpers.load_docker_compose_config(self.config.app_dir, env=runtime_env)
        except (OSError, RuntimeError, ValueError) as exc:
            self.log.warn(f"Could not read stack definition files: {exc}")
            return []
        return compose_helpers.get_declared_images(compose_config)

    def _running_containers(self) -> list[str]:
        result = self.runner(self._compose("ps", "-q"), check=False, capture_output=True, cwd=self.config.app_dir)
        if result.returncode != 0:
            return []
        return [line.strip() for line in str(result.stdout or "").splitlines() if line.strip()]

    def _prune_images(self) -> None:
        try:
            self.runner(compose_helpers.build_image_prune_cmd(), cwd=self.config.app_dir)
        except CommandFailure as exc:
            self.log.warn(str(BestEffortFailure(step="Image prune", cause=exc)))

    def _collect_logs(self) -> str:
        result = self.runner(
            self._compose("logs", f"--tail={self.config.log_tail}"),
            check=False,
            capture_output=True,
            cwd=self.config.app_dir,
        )
        dump = "\n".join(part.rstrip() for part in (result.stdout, result.stderr) if part and part.strip())
        return dump or f"(no log output; compose logs exited {result.returncode})"

    def _replace_stack(self) -> None:
        attempt = self.attempt
        self.log.step("Pulling latest images", icon="📥")
        self._run_compose("pull")
        attempt.transition(DeployState.IMAGES_PULLED)

        attempt.prior_containers = self._running_containers()
        self.log.step(f"Stopping existing containers ({len(attempt.prior_containers)} running)", icon="🛑")
        self._run_compose("down")
        attempt.transition(DeployState.OLD_STACK_STOPPED)

        self.log.step("Starting new containers", icon="▶️")
        self._run_compose("up", "-d")
        attempt.transition(DeployState.NEW_STACK_STARTED)

    def _probe(self) -> ProbeResult:
        health = self.config.health
        if health.grace_period > 0:
            self.log.step(f"Waiting {health.grace_period:g}s for application to start", icon="⏳")
            self.sleep(health.grace_period)
        self.log.step(f"Performing health check ({health.url}, up to {health.timeout:g}s)", icon="🏥")
        return wait_for_healthy(health, http_get=self.http_get, sleep=self.sleep, clock=self.clock)

    def run(self) -> DeploymentAttempt:
        attempt = self.attempt
        self.log.info(f"Starting deployment in {self.config.app_dir}")

        self.preflight()
        attempt.declared_images = self._declared_images()
        if attempt.declared_images:
            self.log.info(f"Images: {', '.join(attempt.declared_images)}")

        try:
            self._replace_stack()
        except CommandFailure as exc:
            attempt.error = str(exc)
            attempt.transition(DeployState.FAILED_COMMAND)
            raise

        self.log.step("Cleaning up old images", icon="🧹")
        self._prune_images()

        result = self._probe()
        attempt.probe_attempts = result.attempts
        attempt.healthy = result.healthy
        attempt.transition(DeployState.PROBED)

        if not result.healthy:
            attempt.log_dump = self._collect_logs()
            attempt.error = result.detail
            attempt.transition(DeployState.FAILED_UNHEALTHY)
            raise HealthCheckFailed(url=self.config.health.url, last_error=result.detail, log_dump=attempt.log_dump)

        attempt.transition(DeployState.SUCCEEDED)
        self.log.ok(f"Deployment successful! Application is healthy ({result.detail}).")
        self.log.info("Container status:", icon="📊")
        self.runner(self._compose("ps"), check=False, cwd=self.config.app_dir)
        return attempt


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Pull, restart and health-check the application stack")
    parser.add_argument(
        "--app-dir",
        default=None,
        help="Directory with the stack definition files and .env. Resolution: CLI -> HOSTDEPLOY_APP_DIR -> CWD",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Settings dotenv file (default: <app-dir>/{DEPLOY_SETTINGS_FILENAME} if present)",
    )
    parser.add_argument("--compose-bin", default=None, help="docker-compose executable")
    parser.add_argument("--health-url", default=None, help="Health endpoint (default: http://localhost:3000/health)")
    parser.add_argument("--health-timeout", type=float, default=None, help="Seconds to keep polling (default: 60)")
    parser.add_argument("--health-interval", type=float, default=None, help="Initial seconds between probes (default: 2)")
    parser.add_argument("--grace-period", type=float, default=None, help="Fixed wait before the first probe (default: 0)")
    parser.add_argument("--log-tail", type=int, default=None, help="Log lines shown when unhealthy (default: 50)")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS verification for an https health URL")
    parser.add_argument("--verbose", action="store_true", help="Log every executed command")

    args = parser.parse_args(argv)
    configure_logging(verbose=bool(args.verbose))
    log = StepLog("deploy")

    try:
        bootstrap = SettingsResolver(dotenv_path=Path(args.config) if args.config else None)
        app_dir = Path(bootstrap.get(VarsEnum.APP_DIR, args.app_dir) or Path.cwd()).expanduser().resolve()
        settings = bootstrap if args.config else SettingsResolver(dotenv_path=app_dir / DEPLOY_SETTINGS_FILENAME)

        compose_bin = settings.get(VarsEnum.COMPOSE_BIN, args.compose_bin)
        if not Path(compose_bin).exists():
            compose_bin = which("docker-compose") or compose_bin

        config = DeployConfig(
            app_dir=app_dir,
            compose_bin=compose_bin,
            log_tail=settings.get_int(VarsEnum.LOG_TAIL, args.log_tail),
            health=HealthProbeConfig(
                url=settings.get(VarsEnum.HEALTH_URL, args.health_url),
                timeout=settings.get_float(VarsEnum.HEALTH_TIMEOUT, args.health_timeout),
                interval=settings.get_float(VarsEnum.HEALTH_INTERVAL, args.health_interval),
                backoff=max(1.0, settings.get_float(VarsEnum.HEALTH_BACKOFF)),
                request_timeout=settings.get_float(VarsEnum.HEALTH_REQUEST_TIMEOUT),
                grace_period=settings.get_float(VarsEnum.HEALTH_GRACE_PERIOD, args.grace_period),
                insecure=settings.get_bool(VarsEnum.HEALTH_INSECURE, bool(args.insecure)),
            ),
        )
        if config.health.interval <= 0:
            raise EnvValidationError(
                context="settings",
                problems=[f"{VarsEnum.HEALTH_INTERVAL.value} must be greater than zero"],
            )
    except EnvValidationError as e:
        print(e.format(), file=sys.stderr)
        raise SystemExit(2)

    if config.health.insecure:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    runner = DeploymentRunner(config, runner=run_command, http_get=requests.get, log=log)
    try:
        runner.run()
    except HealthCheckFailed as exc:
        log.error(f"{exc}. Check logs:")
        print(exc.log_dump, file=sys.stderr)
        raise SystemExit(1)
    except (HostDeployError, OSError) as exc:
        log.error(str(exc))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
