"""
Blob store backed by a Telegram chat.

Files are uploaded as documents to a chat the bot can post in; the
returned reference "<chat>/<message_id>/<file_id>" is enough to fetch
them back through the Bot API.

Uploads and downloads are retried three times, waiting 15s, 30s and 60s
between attempts. Waiting is interrupted by the run cancellation event.
"""

import os
import threading
from pathlib import Path
from typing import Any, Callable, Sequence, TypeVar

import requests

from trackmaster.core.exceptions import RunCancelledError, StorageError
from trackmaster.core.logger import get_logger


logger = get_logger(__name__)

API_URL = "https://api.telegram.org"
REQUEST_TIMEOUT = 60
MAX_ATTEMPTS = 3
BACKOFF = (15.0, 30.0, 60.0)
CHUNK_SIZE = 64 * 1024

# Message fields that may carry the uploaded file, in lookup order
FILE_FIELDS = ("audio", "video", "voice", "document")

T = TypeVar("T")


def format_ref(chat: int, message_id: int, file_id: str) -> str:
    return f"{chat}/{message_id}/{file_id}"


def parse_ref(ref: str) -> tuple[int, int, str]:
    """
    Split a reference into (chat, message_id, file_id).

    Raises:
        StorageError: If ref is malformed.
    """
    parts = ref.split("/")
    if len(parts) != 3 or not parts[2]:
        raise StorageError(f"Invalid telegram reference: {ref}", details={"ref": ref})
    try:
        return int(parts[0]), int(parts[1]), parts[2]
    except ValueError as e:
        raise StorageError(f"Invalid telegram reference: {ref}", details={"ref": ref}) from e


class TelegramBlobStore:
    """
    Chat-as-storage backend using the Bot API over requests.

    Args:
        token: Bot token.
        chat: Chat id the bot posts files to.
        proxy: Optional proxy URL for all requests.
        session: Optional requests.Session (tests inject a fake one).
        cancel_event: Aborts retry waits when set.
        backoff: Waits between attempts, in seconds.
    """

    def __init__(
        self,
        token: str,
        chat: int,
        proxy: str | None = None,
        session: requests.Session | None = None,
        cancel_event: threading.Event | None = None,
        backoff: Sequence[float] = BACKOFF,
    ) -> None:
        self.token = token
        self.chat = chat
        self.session = session or requests.Session()
        if proxy:
            self.session.proxies.update({"http": proxy, "https": proxy})
        self.cancel_event = cancel_event or threading.Event()
        self.backoff = tuple(backoff)

    def _api(self, method: str) -> str:
        return f"{API_URL}/bot{self.token}/{method}"

    def _call(self, method: str, **kwargs: Any) -> Any:
        """
        Call a Bot API method and return its result.

        Raises:
            StorageError: On network failure or an ok=false answer.
        """
        try:
            response = self.session.post(self._api(method), timeout=REQUEST_TIMEOUT, **kwargs)
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise StorageError(
                f"telegram: {method} failed: {e}",
                details={"method": method, "original_error": str(e)}
            ) from e
        if not payload.get("ok"):
            raise StorageError(
                f"telegram: {method} failed: {payload.get('description', 'unknown error')}",
                details={"method": method, "error_code": payload.get("error_code")}
            )
        return payload["result"]

    def _with_retries(self, action: str, call: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return call()
            except StorageError as e:
                attempt += 1
                if attempt >= MAX_ATTEMPTS:
                    raise
                wait = self.backoff[min(attempt - 1, len(self.backoff) - 1)]
                logger.debug(f"telegram: {action}: {e} (retrying in {wait:.0f}s)")
                if self.cancel_event.wait(wait):
                    raise RunCancelledError(f"telegram: {action} cancelled") from e

    def check(self) -> None:
        """
        Verify the bot can access the chat.

        Raises:
            StorageError: If the token or chat id is invalid.
        """
        self._call("getChat", data={"chat_id": self.chat})

    def set(self, local_path: Path) -> str:
        """
        Upload local_path as a document.

        Returns:
            "<chat>/<message_id>/<file_id>"

        Raises:
            StorageError: If every attempt failed or the answer has no file.
            RunCancelledError: If cancelled while waiting to retry.
        """
        local_path = Path(local_path)

        def upload() -> dict:
            with open(local_path, "rb") as f:
                return self._call(
                    "sendDocument",
                    data={"chat_id": self.chat},
                    files={"document": (local_path.name, f)},
                )

        try:
            message = self._with_retries(f"send {local_path.name}", upload)
        except OSError as e:
            raise StorageError(
                f"telegram: couldn't read {local_path}: {e}",
                details={"path": str(local_path)}
            ) from e

        file_id = _message_file_id(message)
        if not file_id:
            raise StorageError(
                "telegram: message doesn't contain a file",
                details={"message_id": message.get("message_id")}
            )
        return format_ref(self.chat, message["message_id"], file_id)

    def get(self, ref: str) -> str:
        """
        Resolve ref to a temporary download URL.

        Raises:
            StorageError: If ref is malformed or the file is unknown.
        """
        _, _, file_id = parse_ref(ref)
        result = self._call("getFile", data={"file_id": file_id})
        file_path = result.get("file_path")
        if not file_path:
            raise StorageError(f"telegram: no file path for {ref}", details={"ref": ref})
        return f"{API_URL}/file/bot{self.token}/{file_path}"

    def download(self, ref: str, local_path: Path) -> None:
        """
        Download ref into local_path.

        Raises:
            StorageError: If every attempt failed.
            RunCancelledError: If cancelled while waiting to retry.
        """
        url = self.get(ref)
        local_path = Path(local_path)
        tmp = local_path.with_name(local_path.name + ".part")

        def fetch() -> None:
            try:
                with self.session.get(url, stream=True, timeout=REQUEST_TIMEOUT) as response:
                    response.raise_for_status()
                    with open(tmp, "wb") as f:
                        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                            f.write(chunk)
            except requests.RequestException as e:
                raise StorageError(
                    f"telegram: couldn't download {ref}: {e}",
                    details={"ref": ref, "original_error": str(e)}
                ) from e

        try:
            self._with_retries(f"download {ref}", fetch)
            os.replace(tmp, local_path)
        except OSError as e:
            raise StorageError(
                f"telegram: couldn't write {local_path}: {e}",
                details={"path": str(local_path)}
            ) from e
        finally:
            tmp.unlink(missing_ok=True)


def _message_file_id(message: dict) -> str:
    for name in FILE_FIELDS:
        item = message.get(name)
        if item and item.get("file_id"):
            return item["file_id"]
    photos = message.get("photo") or []
    if photos:
        return photos[0].get("file_id", "")
    return ""
