"""
Blob storage for masters and waveform images.

Backends:
    - local: files copied into a directory
    - telegram: files posted to a Telegram chat

Usage:
    store = new_blob_store(config.storage, cancel_event=context.cancel_event)
    ref = store.set(Path("master.mp3"))
    store.download(ref, Path("copy.mp3"))
"""

import threading
from pathlib import Path
from typing import Protocol

from trackmaster.core.config import StorageConfig
from trackmaster.core.exceptions import ConfigError
from trackmaster.storage.local import LocalBlobStore
from trackmaster.storage.telegram import TelegramBlobStore


class BlobStore(Protocol):
    """Stores files and hands back opaque string references."""

    def check(self) -> None: ...

    def set(self, local_path: Path) -> str: ...

    def get(self, ref: str) -> str: ...

    def download(self, ref: str, local_path: Path) -> None: ...


def new_blob_store(
    config: StorageConfig,
    cancel_event: threading.Event | None = None
) -> BlobStore:
    """
    Build the blob store described by the storage section.

    Raises:
        ConfigError: If the storage type is unknown or incomplete.
    """
    if config.type == "local":
        if config.directory is None:
            raise ConfigError("'storage.directory' is required for local storage")
        return LocalBlobStore(config.directory)
    if config.type == "telegram":
        if not config.telegram_token or config.telegram_chat is None:
            raise ConfigError("'storage.telegram_token' and 'storage.telegram_chat' are required")
        return TelegramBlobStore(
            config.telegram_token,
            config.telegram_chat,
            proxy=config.proxy,
            cancel_event=cancel_event,
        )
    raise ConfigError(
        f"Unknown storage type: {config.type}",
        details={"field": "storage.type", "value": config.type}
    )


__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "TelegramBlobStore",
    "new_blob_store",
]
