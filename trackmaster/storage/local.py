"""
Blob store backed by a local directory.

References are plain file names inside the root directory.
"""

import os
import shutil
from pathlib import Path

from trackmaster.core.exceptions import StorageError
from trackmaster.core.logger import get_logger


logger = get_logger(__name__)


class LocalBlobStore:
    """
    Stores files by copying them into root.

    Storing a file with a name that already exists replaces it.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def check(self) -> None:
        """Create the root directory if needed."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Couldn't create storage directory: {e}",
                details={"path": str(self.root)}
            ) from e

    def _resolve(self, ref: str) -> Path:
        if not ref or "/" in ref or "\\" in ref or ref in (".", ".."):
            raise StorageError(f"Invalid local reference: {ref!r}", details={"ref": ref})
        return self.root / ref

    def set(self, local_path: Path) -> str:
        """
        Copy local_path into the store.

        Returns:
            The reference (the file name).

        Raises:
            StorageError: If the copy fails.
        """
        local_path = Path(local_path)
        ref = local_path.name
        target = self._resolve(ref)
        tmp = target.with_name(target.name + ".part")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, tmp)
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(
                f"Couldn't store {local_path.name}: {e}",
                details={"path": str(local_path), "original_error": str(e)}
            ) from e
        logger.debug(f"Stored {local_path} as {ref}")
        return ref

    def get(self, ref: str) -> str:
        """Return a file:// URL for ref."""
        path = self._resolve(ref)
        if not path.exists():
            raise StorageError(f"Blob not found: {ref}", details={"ref": ref})
        return path.resolve().as_uri()

    def download(self, ref: str, local_path: Path) -> None:
        """
        Copy ref to local_path.

        Raises:
            StorageError: If ref does not exist or the copy fails.
        """
        source = self._resolve(ref)
        if not source.exists():
            raise StorageError(f"Blob not found: {ref}", details={"ref": ref})
        try:
            shutil.copyfile(source, local_path)
        except OSError as e:
            raise StorageError(
                f"Couldn't copy {ref}: {e}",
                details={"ref": ref, "original_error": str(e)}
            ) from e
