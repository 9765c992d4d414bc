from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from keel.config import KeelConfig
from keel.errors import ConfigError, NotFoundError, TransportError


logger = logging.getLogger(__name__)

HUB_REPO_TYPE = "dataset"
JOURNEYS_DIR = "journeys"
ARCHIVE_SUFFIX = ".json.gz"
NOT_FOUND_ERRORS = frozenset({"EntryNotFoundError", "RepositoryNotFoundError"})
T = TypeVar("T")


def resolve_hf_token(config_token: str | None = None) -> str | None:
    """Token from the environment, then .keel.json, then the huggingface-cli login."""
    for env_name in ("HF_TOKEN", "HUGGING_FACE_HUB_TOKEN"):
        value = os.getenv(env_name, "").strip()
        if value:
            return value
    if config_token and config_token.strip():
        return config_token.strip()

    import huggingface_hub

    value = huggingface_hub.get_token()
    return (value.strip() or None) if value else None


def _load_hf_symbols():
    from huggingface_hub import HfApi, hf_hub_download

    return HfApi, hf_hub_download


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    current: BaseException | None = exc
    while current is not None:
        yield current
        current = current.__cause__


def _is_timeout_error(exc: BaseException) -> bool:
    return any(
        isinstance(current, TimeoutError) or type(current).__name__.endswith("Timeout")
        for current in _exception_chain(exc)
    )


def _is_not_found_error(exc: BaseException) -> bool:
    return any(
        type(current).__name__ in NOT_FOUND_ERRORS or "404" in str(current)
        for current in _exception_chain(exc)
    )


def _retry_on_timeout(
    func: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = 3,
    base_delay_seconds: float = 1.0,
) -> T:
    for attempt in range(1, max_attempts):
        try:
            return func()
        except Exception as exc:
            if not _is_timeout_error(exc):
                raise
            delay = base_delay_seconds * 2 ** (attempt - 1)
            logger.warning(
                "%s timed out (attempt %d/%d), retrying in %.1fs", operation, attempt, max_attempts, delay
            )
            time.sleep(delay)
    return func()


def _require_repo(config: KeelConfig) -> str:
    if not config.hub_repo_id:
        raise ConfigError("No hub_repo_id configured. Set it in .keel.json or pass --repo.")
    return config.hub_repo_id


def remote_journey_path(name: str) -> str:
    return f"{JOURNEYS_DIR}/{name}{ARCHIVE_SUFFIX}"


def push_archive(config: KeelConfig, local_path: Path, remote_path: str) -> str:
    """Upload an exported archive to the configured Hub repo and return the remote path."""
    repo_id = _require_repo(config)
    HfApi, _ = _load_hf_symbols()
    token = resolve_hf_token(config.token)
    api = HfApi(token=token)

    def _create_call():
        return api.create_repo(
            repo_id=repo_id,
            repo_type=HUB_REPO_TYPE,
            token=token,
            exist_ok=True,
            private=True,
        )

    def _upload_call():
        return api.upload_file(
            path_or_fileobj=str(local_path),
            path_in_repo=remote_path,
            repo_id=repo_id,
            repo_type=HUB_REPO_TYPE,
            token=token,
            commit_message=f"keel publish: {remote_path}",
        )

    try:
        _retry_on_timeout(_create_call, operation="create_repo")
        _retry_on_timeout(_upload_call, operation=f"upload:{remote_path}")
    except Exception as exc:
        raise TransportError(f"Upload of {remote_path} to {repo_id} failed: {exc}") from exc
    logger.info("Pushed %s to %s:%s", local_path, repo_id, remote_path)
    return remote_path


def pull_archive(config: KeelConfig, remote_path: str, dest_dir: Path) -> Path:
    """Download ``remote_path`` from the configured Hub repo into ``dest_dir``."""
    repo_id = _require_repo(config)
    _, hf_hub_download = _load_hf_symbols()
    token = resolve_hf_token(config.token)
    dest_dir.mkdir(parents=True, exist_ok=True)

    def _download_call():
        return hf_hub_download(
            repo_id=repo_id,
            filename=remote_path,
            repo_type=HUB_REPO_TYPE,
            token=token,
            local_dir=str(dest_dir),
        )

    try:
        downloaded = _retry_on_timeout(_download_call, operation=f"download:{remote_path}")
    except Exception as exc:
        if _is_not_found_error(exc):
            raise NotFoundError("remote archive", remote_path) from exc
        raise TransportError(f"Download of {remote_path} from {repo_id} failed: {exc}") from exc
    logger.info("Pulled %s:%s to %s", repo_id, remote_path, downloaded)
    return Path(downloaded)
