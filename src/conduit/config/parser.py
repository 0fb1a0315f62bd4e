"""Read conduit.yaml into a validated SessionConfig."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from conduit.config.models import SessionConfig
from conduit.constants import DEFAULT_CONFIG_NAME

#: pydantic message fragments rewritten into plainer wording.
_FRIENDLY_MESSAGES = {
    "extra inputs are not permitted": "Unknown setting",
    "field required": "This field is required",
}


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> SessionConfig:
    """Build a SessionConfig from a YAML file.

    With no *path*, ``conduit.yaml`` in the current directory is used if it
    exists; otherwise every setting keeps its default.  A ``.env`` file next
    to the config is loaded into the process environment before validation.
    A relative ``working_directory`` is taken relative to the config file.

    Raises:
        ConfigError: If an explicit *path* is missing, the file is not a
            YAML mapping, or a setting fails validation.
    """
    source = _find_config(path)
    if source is None:
        return SessionConfig()

    settings = _parse_yaml(source)
    base_dir = source.parent
    if "working_directory" in settings:
        settings["working_directory"] = _working_directory(
            settings["working_directory"], base_dir
        )

    dotenv_file = base_dir / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)

    try:
        return SessionConfig.model_validate(settings)
    except ValidationError as exc:
        raise ConfigError(_describe(exc)) from exc


def _find_config(path: Path | None) -> Path | None:
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_NAME
        return candidate if candidate.is_file() else None
    explicit = Path(path)
    if not explicit.is_file():
        msg = f"Config file not found: {explicit}"
        raise ConfigError(msg)
    return explicit


def _parse_yaml(source: Path) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(source.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"Cannot read {source}: {exc}"
        raise ConfigError(msg) from exc
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
        msg = f"Invalid YAML in {source.name}{where}"
        raise ConfigError(msg) from exc

    if loaded is None:
        return {}
    if isinstance(loaded, dict):
        return loaded
    msg = f"Expected a YAML mapping in {source.name}, got {type(loaded).__name__}"
    raise ConfigError(msg)


def _working_directory(value: Any, base_dir: Path) -> Any:
    """Anchor a relative directory to *base_dir* and check that it exists."""
    if not isinstance(value, str):
        return value
    directory = Path(value).expanduser()
    if not directory.is_absolute():
        directory = (base_dir / directory).resolve()
    if not directory.is_dir():
        msg = f"Working directory not found: {value}"
        raise ConfigError(msg)
    return str(directory)


def _describe(exc: ValidationError) -> str:
    lines = ["Config validation failed:"]
    for error in exc.errors():
        where = ".".join(str(part) for part in error["loc"]) or "(root)"
        text = error["msg"]
        for fragment, friendly in _FRIENDLY_MESSAGES.items():
            if fragment in text.lower():
                text = friendly
                break
        else:
            if text.lower().startswith("input should be"):
                text = f"Invalid value: {text}"
        lines.append(f"  {where}: {text}")
    return "\n".join(lines)
