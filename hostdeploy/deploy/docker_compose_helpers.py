import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    from hostdeploy.deploy.host_templates import STACK_FILES, compose_file_args
except ImportError:
    from host_templates import STACK_FILES, compose_file_args

# Regex to match ${VAR:-default} or ${VAR}
INTERPOLATION_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def interpolate_value(value: str, env: Optional[Mapping[str, str]] = None) -> str:
    """
    Interpolates environment variables in a string.
    Supports ${VAR} and ${VAR:-default}. `env` is consulted before the process environment.
    """
    if not isinstance(value, str):
        return value

    def replace_match(match):
        var_name = match.group(1)
        default_value = match.group(2)
        env_val = env.get(var_name) if env is not None else None
        if env_val is None:
            env_val = os.getenv(var_name)
        if env_val is not None:
            return env_val
        return default_value if default_value is not None else ""

    return INTERPOLATION_PATTERN.sub(replace_match, value)


def interpolate_dict(data: Any, env: Optional[Mapping[str, str]] = None) -> Any:
    """Recursively interpolates strings in a dictionary or list."""
    if isinstance(data, dict):
        return {k: interpolate_dict(v, env) for k, v in data.items()}
    elif isinstance(data, list):
        return [interpolate_dict(v, env) for v in data]
    elif isinstance(data, str):
        return interpolate_value(data, env)
    else:
        return data


def merge_compose_configs(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Merge an overlay file onto a base file the way `-f base -f overlay` does for mappings.

    Mappings merge recursively; scalars and lists in the overlay replace the base value.
    """
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_compose_configs(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_compose_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"{path.name} not found in {path.parent}")
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to parse {path.name}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise RuntimeError(f"{path.name} is not a valid compose mapping")
    return raw


def load_docker_compose_config(
    cwd: Path,
    compose_files: tuple[str, ...] = STACK_FILES,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Parses the stack definition files in order using PyYAML, merges them and interpolates variables.
    Returns the parsed configuration dictionary.
    """
    config: Dict[str, Any] = {}
    for name in compose_files:
        config = merge_compose_configs(config, load_compose_file(cwd / name))
    return interpolate_dict(config, env)


def get_image(service_config: Dict[str, Any]) -> str:
    """Get the image name for a service."""
    return service_config.get("image", "")


def get_declared_images(compose_config: Dict[str, Any]) -> list[str]:
    """Image references the stack will pull, in service order, without duplicates."""
    services = compose_config.get("services") or {}
    images: list[str] = []
    for service_config in services.values():
        if not isinstance(service_config, dict):
            continue
        image = str(get_image(service_config) or "").strip()
        if image and image not in images:
            images.append(image)
    return images


def build_compose_cmd(compose_bin: str, *args: str, compose_files: tuple[str, ...] = STACK_FILES) -> list[str]:
    return [compose_bin, *compose_file_args(compose_files), *args]


def build_image_prune_cmd() -> list[str]:
    return ["docker", "image", "prune", "-f"]
