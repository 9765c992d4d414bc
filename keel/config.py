from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from keel.errors import ConfigError
from keel.filters import PathFilter, build_path_filter


CONFIG_FILENAME = ".keel.json"
STORAGE_DIRNAME = ".keel"
STATE_DB_FILENAME = "state.db"
OBJECTS_DIRNAME = "objects"
TRACKING_DIRNAME = "tracking"

DEFAULT_DEBOUNCE_MS = 200
DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_COMMAND_TIMEOUT = 300.0
DEFAULT_CAPTURE_ENV = ("SHELL", "LANG", "VIRTUAL_ENV", "PYTHON*")


@dataclass(slots=True)
class KeelConfig:
    project_root: str
    storage_dir: str = ""
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    capture_env: list[str] = field(default_factory=lambda: list(DEFAULT_CAPTURE_ENV))
    hub_repo_id: str = ""
    token: str = ""

    @property
    def project_root_path(self) -> Path:
        return Path(self.project_root).resolve()

    @property
    def storage_path(self) -> Path:
        if self.storage_dir:
            path = Path(self.storage_dir).expanduser()
            if not path.is_absolute():
                path = self.project_root_path / path
            return path.resolve()
        return self.project_root_path / STORAGE_DIRNAME

    @property
    def state_db_path(self) -> Path:
        return self.storage_path / STATE_DB_FILENAME

    @property
    def objects_path(self) -> Path:
        return self.storage_path / OBJECTS_DIRNAME

    @property
    def tracking_path(self) -> Path:
        return self.storage_path / TRACKING_DIRNAME

    def path_filter(self) -> PathFilter:
        return build_path_filter(
            self.include,
            self.exclude,
            internal_paths=self._internal_paths(),
        )

    def _internal_paths(self) -> tuple[str, ...]:
        internal = [CONFIG_FILENAME]
        try:
            relative = self.storage_path.relative_to(self.project_root_path)
        except ValueError:
            relative = None
        if relative is not None and relative.parts:
            internal.append(relative.as_posix())
        return tuple(internal)


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def load_config(base_dir: Path | None = None) -> KeelConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `keel init` first."
        )

    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config in {path} must be a JSON object")

    try:
        return KeelConfig(
            project_root=str(data.get("project_root") or path.parent),
            storage_dir=str(data.get("storage_dir", "")),
            debounce_ms=int(data.get("debounce_ms", DEFAULT_DEBOUNCE_MS)),
            chunk_size=int(data.get("chunk_size", DEFAULT_CHUNK_SIZE)),
            command_timeout=float(data.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
            include=[str(item) for item in data.get("include", [])],
            exclude=[str(item) for item in data.get("exclude", [])],
            capture_env=[str(item) for item in data.get("capture_env", DEFAULT_CAPTURE_ENV)],
            hub_repo_id=str(data.get("hub_repo_id", "")),
            token=str(data.get("token", "")),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value in {path}: {exc}") from exc


def save_config(config: KeelConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir or config.project_root_path)
    payload = asdict(config)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def default_token() -> str:
    return os.getenv("HF_TOKEN", "")
