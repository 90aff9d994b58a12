"""
Subprocess capability shared by the external tool wrappers.

Every call into ffmpeg, aubio or phase_limiter goes through a ToolRunner,
so tests can substitute a fake runner that replays recorded output, and
a run-wide cancellation event reaches every child process.
"""

import subprocess
import time
import threading
from typing import Sequence

from trackmaster.core.exceptions import RunCancelledError, ToolError, ToolTimeoutError
from trackmaster.core.logger import get_logger


logger = get_logger(__name__)

POLL_INTERVAL = 0.5
MAX_OUTPUT_IN_ERROR = 2000


class ToolRunner:
    """
    Runs external commands and returns their output.

    Args:
        cancel_event: When set, running children are killed and
                      RunCancelledError is raised.
        timeout: Per-call budget in seconds (None for no limit).

    Thread Safety:
        A single runner may be shared by all workers.
    """

    def __init__(
        self,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None
    ) -> None:
        self.cancel_event = cancel_event
        self.timeout = timeout

    def run(self, args: Sequence[str], merge_stderr: bool = True) -> str:
        """
        Run a command to completion.

        Args:
            args: Program and arguments.
            merge_stderr: Capture stderr into the returned text. When
                          False stderr is only used for error messages.

        Returns:
            The captured output as text.

        Raises:
            ToolError: Binary missing or non-zero exit status.
            ToolTimeoutError: The call exceeded the runner timeout.
            RunCancelledError: The cancellation event was set.
        """
        args = [str(arg) for arg in args]
        name = args[0]
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelledError(f"{name}: cancelled before start")

        logger.debug(f"Running: {' '.join(args)}")
        try:
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            raise ToolError(
                f"{name}: binary not found",
                details={"args": args, "original_error": str(e)}
            ) from e
        except OSError as e:
            raise ToolError(
                f"{name}: couldn't start: {e}",
                details={"args": args, "original_error": str(e)}
            ) from e

        deadline = time.monotonic() + self.timeout if self.timeout else None
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    self._kill(proc)
                    raise RunCancelledError(f"{name}: cancelled", details={"args": args})
                if deadline is not None and time.monotonic() > deadline:
                    self._kill(proc)
                    raise ToolTimeoutError(
                        f"{name}: timed out after {self.timeout:.0f}s",
                        details={"args": args}
                    )

        if proc.returncode != 0:
            output = (stdout if merge_stderr else stderr) or ""
            output = output.strip()[-MAX_OUTPUT_IN_ERROR:]
            raise ToolError(
                f"{name}: exited with status {proc.returncode}: {output}",
                details={"args": args, "returncode": proc.returncode}
            )
        return stdout or ""

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        proc.communicate()
