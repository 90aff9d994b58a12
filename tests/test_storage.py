"""Test blob stores"""

import threading

import pytest
import requests

from trackmaster.core.config import StorageConfig
from trackmaster.core.exceptions import ConfigError, RunCancelledError, StorageError
from trackmaster.storage import LocalBlobStore, TelegramBlobStore, new_blob_store
from trackmaster.storage.telegram import parse_ref


class FakeResponse:
    def __init__(self, payload=None, content=b"", status=200):
        self.payload = payload
        self.content = content
        self.status = status

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"status {self.status}")

    def iter_content(self, chunk_size=1):
        yield self.content

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


class FakeSession:
    """Replays queued Bot API answers"""

    def __init__(self):
        self.proxies = {}
        self.posts = []
        self.gets = []
        self.answers = []
        self.downloads = []

    def post(self, url, timeout=None, data=None, files=None):
        self.posts.append((url.rsplit("/", 1)[-1], data, files))
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return FakeResponse(payload=answer)

    def get(self, url, stream=False, timeout=None):
        self.gets.append(url)
        answer = self.downloads.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def telegram_store(session, **kwargs):
    return TelegramBlobStore("123:abc", -100, session=session, backoff=(0.0, 0.0, 0.0), **kwargs)


class TestLocalBlobStore:
    """Test the directory backend"""

    def test_set_get_download(self, temp_dir):
        """Stored files are referenced by name and can be copied back"""
        store = LocalBlobStore(temp_dir / "blobs")
        store.check()
        source = temp_dir / "0001.mp3"
        source.write_bytes(b"master")

        ref = store.set(source)
        assert ref == "0001.mp3"
        assert store.get(ref).startswith("file://")

        target = temp_dir / "copy.mp3"
        store.download(ref, target)
        assert target.read_bytes() == b"master"

    def test_missing_blob(self, temp_dir):
        store = LocalBlobStore(temp_dir)
        with pytest.raises(StorageError):
            store.download("missing.mp3", temp_dir / "x.mp3")

    def test_reference_with_separator(self, temp_dir):
        """References can't escape the root directory"""
        store = LocalBlobStore(temp_dir)
        with pytest.raises(StorageError):
            store.get("../secret")

    def test_missing_source(self, temp_dir):
        store = LocalBlobStore(temp_dir / "blobs")
        with pytest.raises(StorageError):
            store.set(temp_dir / "missing.mp3")


class TestTelegramBlobStore:
    """Test the Telegram backend against a fake session"""

    def test_parse_ref(self):
        assert parse_ref("-100/42/BQACAg") == (-100, 42, "BQACAg")
        with pytest.raises(StorageError):
            parse_ref("-100/BQACAg")

    def test_check(self):
        """check() asks for the chat"""
        session = FakeSession()
        session.answers.append({"ok": True, "result": {"id": -100}})
        telegram_store(session).check()
        assert session.posts[0][0] == "getChat"

    def test_check_with_bad_token(self):
        session = FakeSession()
        session.answers.append({"ok": False, "error_code": 401, "description": "Unauthorized"})
        with pytest.raises(StorageError):
            telegram_store(session).check()

    def test_set(self, temp_dir):
        """Uploads return chat/message/file references"""
        session = FakeSession()
        session.answers.append({"ok": True, "result": {"message_id": 42, "audio": {"file_id": "AUD1"}}})
        path = temp_dir / "0001.mp3"
        path.write_bytes(b"master")

        ref = telegram_store(session).set(path)

        assert ref == "-100/42/AUD1"
        method, data, files = session.posts[0]
        assert method == "sendDocument"
        assert data == {"chat_id": -100}
        assert files["document"][0] == "0001.mp3"

    def test_set_photo_reference(self, temp_dir):
        """Images sent as photos use the first size"""
        session = FakeSession()
        session.answers.append({
            "ok": True,
            "result": {"message_id": 7, "photo": [{"file_id": "SMALL"}, {"file_id": "BIG"}]},
        })
        path = temp_dir / "0001.jpg"
        path.write_bytes(b"jpeg")
        assert telegram_store(session).set(path) == "-100/7/SMALL"

    def test_set_retries(self, temp_dir):
        """Transient failures are retried"""
        session = FakeSession()
        session.answers.extend([
            requests.ConnectionError("reset"),
            {"ok": True, "result": {"message_id": 1, "document": {"file_id": "DOC"}}},
        ])
        path = temp_dir / "0001.mp3"
        path.write_bytes(b"master")

        assert telegram_store(session).set(path) == "-100/1/DOC"
        assert len(session.posts) == 2

    def test_set_gives_up_after_three_attempts(self, temp_dir):
        session = FakeSession()
        session.answers.extend([requests.ConnectionError("reset")] * 3)
        path = temp_dir / "0001.mp3"
        path.write_bytes(b"master")

        with pytest.raises(StorageError):
            telegram_store(session).set(path)
        assert len(session.posts) == 3

    def test_retry_wait_is_cancellable(self, temp_dir):
        """A cancelled run stops waiting between attempts"""
        session = FakeSession()
        session.answers.append(requests.ConnectionError("reset"))
        event = threading.Event()
        event.set()
        path = temp_dir / "0001.mp3"
        path.write_bytes(b"master")

        with pytest.raises(RunCancelledError):
            telegram_store(session, cancel_event=event).set(path)

    def test_get_and_download(self, temp_dir):
        """References resolve to file URLs that are streamed to disk"""
        session = FakeSession()
        session.answers.extend([
            {"ok": True, "result": {"file_path": "music/file_1.mp3"}},
        ])
        session.downloads.append(FakeResponse(content=b"master"))
        target = temp_dir / "0001.mp3"

        telegram_store(session).download("-100/42/AUD1", target)

        assert session.gets == ["https://api.telegram.org/file/bot123:abc/music/file_1.mp3"]
        assert target.read_bytes() == b"master"
        assert not (temp_dir / "0001.mp3.part").exists()

    def test_proxy(self):
        session = FakeSession()
        telegram_store(session, proxy="http://127.0.0.1:8080")
        assert session.proxies == {"http": "http://127.0.0.1:8080", "https": "http://127.0.0.1:8080"}


class TestFactory:
    """Test new_blob_store"""

    def test_local(self, temp_dir):
        store = new_blob_store(StorageConfig(type="local", directory=temp_dir))
        assert isinstance(store, LocalBlobStore)

    def test_telegram(self):
        store = new_blob_store(StorageConfig(type="telegram", telegram_token="1:a", telegram_chat=5))
        assert isinstance(store, TelegramBlobStore)

    def test_unknown_type(self):
        with pytest.raises(ConfigError):
            new_blob_store(StorageConfig(type="s3"))

    def test_incomplete_local(self):
        with pytest.raises(ConfigError):
            new_blob_store(StorageConfig(type="local"))
