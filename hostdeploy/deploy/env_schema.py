"""Deterministic configuration schema for provisioning and deployment.

This module is the single source of truth for:
- which settings exist and their built-in defaults
- how a setting is resolved (CLI -> process env -> `.env.deploy` -> default)
- how malformed values are reported

The runtime `.env` consumed by the application stack (database host, port,
credentials) is NOT described here; it is passed through to compose untouched.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values


DEPLOY_SETTINGS_FILENAME = ".env.deploy"


class ValueKind(str, Enum):
    STR = "str"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"


class VarsEnum(str, Enum):
    # Host layout
    APP_DIR = "HOSTDEPLOY_APP_DIR"
    APP_USER = "HOSTDEPLOY_APP_USER"
    SERVICE_NAME = "HOSTDEPLOY_SERVICE_NAME"
    COMPOSE_BIN = "HOSTDEPLOY_COMPOSE_BIN"
    COMPOSE_RELEASE = "HOSTDEPLOY_COMPOSE_RELEASE"

    # Provisioning switches
    SKIP_SYSTEM_UPDATE = "HOSTDEPLOY_SKIP_SYSTEM_UPDATE"
    NO_SUDO = "HOSTDEPLOY_NO_SUDO"

    # Health probe
    HEALTH_URL = "HOSTDEPLOY_HEALTH_URL"
    HEALTH_TIMEOUT = "HOSTDEPLOY_HEALTH_TIMEOUT"
    HEALTH_INTERVAL = "HOSTDEPLOY_HEALTH_INTERVAL"
    HEALTH_BACKOFF = "HOSTDEPLOY_HEALTH_BACKOFF"
    HEALTH_GRACE_PERIOD = "HOSTDEPLOY_HEALTH_GRACE_PERIOD"
    HEALTH_REQUEST_TIMEOUT = "HOSTDEPLOY_HEALTH_REQUEST_TIMEOUT"
    HEALTH_INSECURE = "HOSTDEPLOY_HEALTH_INSECURE"
    LOG_TAIL = "HOSTDEPLOY_LOG_TAIL"


@dataclass(frozen=True)
class EnvKeySpec:
    key: VarsEnum
    kind: ValueKind = ValueKind.STR
    default: str | None = None


class EnvValidationError(ValueError):
    def __init__(self, *, context: str, problems: list[str]):
        super().__init__("; ".join(problems))
        self.context = context
        self.problems = problems

    def format(self) -> str:
        lines = [f"[env] validation failed: {self.context}"]
        for p in self.problems:
            lines.append(f"- {p}")
        return "\n".join(lines)


DEPLOY_SCHEMA: tuple[EnvKeySpec, ...] = (
    # Empty defaults mean "derive from the resolved host profile".
    EnvKeySpec(key=VarsEnum.APP_DIR),
    EnvKeySpec(key=VarsEnum.APP_USER),
    EnvKeySpec(key=VarsEnum.SERVICE_NAME, default="nodeapp"),
    EnvKeySpec(key=VarsEnum.COMPOSE_BIN, default="/usr/local/bin/docker-compose"),
    EnvKeySpec(key=VarsEnum.COMPOSE_RELEASE, default="latest"),
    EnvKeySpec(key=VarsEnum.SKIP_SYSTEM_UPDATE, kind=ValueKind.BOOL, default="false"),
    EnvKeySpec(key=VarsEnum.NO_SUDO, kind=ValueKind.BOOL, default="false"),
    EnvKeySpec(key=VarsEnum.HEALTH_URL, default="http://localhost:3000/health"),
    EnvKeySpec(key=VarsEnum.HEALTH_TIMEOUT, kind=ValueKind.FLOAT, default="60"),
    EnvKeySpec(key=VarsEnum.HEALTH_INTERVAL, kind=ValueKind.FLOAT, default="2"),
    EnvKeySpec(key=VarsEnum.HEALTH_BACKOFF, kind=ValueKind.FLOAT, default="1.5"),
    EnvKeySpec(key=VarsEnum.HEALTH_GRACE_PERIOD, kind=ValueKind.FLOAT, default="0"),
    EnvKeySpec(key=VarsEnum.HEALTH_REQUEST_TIMEOUT, kind=ValueKind.FLOAT, default="5"),
    EnvKeySpec(key=VarsEnum.HEALTH_INSECURE, kind=ValueKind.BOOL, default="false"),
    EnvKeySpec(key=VarsEnum.LOG_TAIL, kind=ValueKind.INT, default="50"),
)


def _schema_keys(schema: Iterable[EnvKeySpec]) -> set[str]:
    return {spec.key.value for spec in schema}


def get_spec(schema: Iterable[EnvKeySpec], key: VarsEnum) -> EnvKeySpec:
    for spec in schema:
        if spec.key == key:
            return spec
    raise KeyError(key)


def parse_dotenv_file(path: Path) -> dict[str, str]:
    """Parse dotenv file strictly.

    - Comments are ignored.
    - Keys are preserved even if they have empty values (""), so we can detect unknown keys.
    """
    kv: dict[str, str] = {}
    raw = dotenv_values(path)
    for k, v in raw.items():
        if k is None:
            continue
        key = str(k).strip()
        if not key:
            continue
        val = "" if v is None else str(v).strip()
        kv[key] = val
    return kv


def validate_known_keys(schema: Iterable[EnvKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    allowed = _schema_keys(schema)
    unknown = sorted([k for k in kv.keys() if k not in allowed])
    if unknown:
        raise EnvValidationError(
            context=context,
            problems=["Unknown key(s): " + ", ".join(unknown)],
        )


def apply_defaults(schema: Iterable[EnvKeySpec], kv: dict[str, str]) -> dict[str, str]:
    out = dict(kv)
    for spec in schema:
        if spec.key.value in out and str(out.get(spec.key.value) or "").strip():
            continue
        if spec.default is None:
            continue
        out[spec.key.value] = spec.default
    return out


def validate_value_kinds(schema: Iterable[EnvKeySpec], kv: Mapping[str, str], *, context: str) -> None:
    problems: list[str] = []
    for spec in schema:
        raw = str(kv.get(spec.key.value) or "").strip()
        if not raw:
            continue
        if spec.kind == ValueKind.INT:
            try:
                int(raw)
            except ValueError:
                problems.append(f"{spec.key.value} must be an integer, got {raw!r}")
        elif spec.kind == ValueKind.FLOAT:
            try:
                float(raw)
            except ValueError:
                problems.append(f"{spec.key.value} must be a number, got {raw!r}")
        elif spec.kind == ValueKind.BOOL:
            if raw.lower() not in {"1", "true", "yes", "y", "on", "0", "false", "no", "n", "off"}:
                problems.append(f"{spec.key.value} must be a boolean, got {raw!r}")
    if problems:
        raise EnvValidationError(context=context, problems=problems)


def parse_boolish(value: str, *, default: bool = False) -> bool:
    normalized = str(value or "").strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


class SettingsResolver:
    """Resolve settings in order: CLI value -> process env -> `.env.deploy` -> schema default."""

    def __init__(
        self,
        *,
        dotenv_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
        schema: tuple[EnvKeySpec, ...] = DEPLOY_SCHEMA,
    ):
        self.schema = schema
        self.environ = os.environ if environ is None else environ
        self.dotenv_path = dotenv_path
        self.file_kv: dict[str, str] = {}
        if dotenv_path is not None and dotenv_path.exists():
            self.file_kv = parse_dotenv_file(dotenv_path)
            validate_known_keys(schema, self.file_kv, context=str(dotenv_path))
            validate_value_kinds(schema, self.file_kv, context=str(dotenv_path))

    def get(self, key: VarsEnum, cli_value: object | None = None) -> str:
        resolved = str(cli_value if cli_value is not None else "").strip()
        if not resolved:
            resolved = str(self.environ.get(key.value) or "").strip()
        if not resolved:
            resolved = str(self.file_kv.get(key.value) or "").strip()
        if not resolved:
            resolved = str(get_spec(self.schema, key).default or "").strip()
        return resolved

    def get_int(self, key: VarsEnum, cli_value: object | None = None) -> int:
        raw = self.get(key, cli_value)
        try:
            value = int(raw)
        except ValueError:
            raise EnvValidationError(context="settings", problems=[f"{key.value} must be an integer, got {raw!r}"])
        if value < 0:
            raise EnvValidationError(context="settings", problems=[f"{key.value} must not be negative"])
        return value

    def get_float(self, key: VarsEnum, cli_value: object | None = None) -> float:
        raw = self.get(key, cli_value)
        try:
            value = float(raw)
        except ValueError:
            raise EnvValidationError(context="settings", problems=[f"{key.value} must be a number, got {raw!r}"])
        if value < 0:
            raise EnvValidationError(context="settings", problems=[f"{key.value} must not be negative"])
        return value

    def get_bool(self, key: VarsEnum, cli_flag: bool = False) -> bool:
        if cli_flag:
            return True
        default = parse_boolish(get_spec(self.schema, key).default or "")
        return parse_boolish(self.get(key), default=default)
