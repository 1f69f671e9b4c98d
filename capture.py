"""
capture.py — ffmpeg capture sessions for stream_recorder
"""

import asyncio
import datetime as dt
import logging
from enum import Enum, auto
from pathlib import Path
from typing import Callable, List, Optional

from config import Config

logger = logging.getLogger("stream_recorder")


class SpawnError(Exception):
    """The capture subprocess could not be started."""


class ShutdownState(Enum):
    RUNNING = auto()
    STOP_REQUESTED = auto()
    FORCE_EXIT_SCHEDULED = auto()
    EXITED = auto()


class Outcome(Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"
    ENDED = "ended"


def build_command(config: Config, stream_url: str, target: Path) -> List[str]:
    """ffmpeg arguments for a stream copy into ``target`` (or nowhere when simulating)."""
    if config.simulate:
        return [
            config.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "quiet",
            "-n",
            "-i", stream_url,
            "-c", "copy",
            "-f", "null",
            "-",
        ]
    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-loglevel", "quiet",
        "-n",
        "-re",  # read at native rate, avoids reading the playlist too fast or too slow
        "-i", stream_url,
        "-c", "copy",
        "-f", "mp4",
        str(target),
    ]


def classify_exit(code: int, exiting: bool, live: bool) -> Outcome:
    """Decide what happened to a recording from how ffmpeg exited.

    A stop request always means the recording was aborted. Otherwise a clean
    exit is a completed recording and a failing exit is an error while the
    channel is still live, or the tail end of a stream that already went
    offline.

    Args:
        code: ffmpeg's exit code
        exiting: Whether a stop was requested for the session
        live: Whether the channel is still live at exit time

    Returns:
        The outcome to report for the recording
    """
    if exiting:
        return Outcome.ABORTED
    if code == 0:
        return Outcome.COMPLETED
    if live:
        return Outcome.ERROR
    return Outcome.ENDED


class CaptureSession:
    """One ffmpeg process recording one live period.

    Stopping is a one way state machine: RUNNING -> STOP_REQUESTED ->
    FORCE_EXIT_SCHEDULED -> EXITED. A stop request asks ffmpeg to quit through
    its stdin and schedules the worker exit after ``config.stop_grace``
    seconds whether or not ffmpeg has finished by then.
    """

    def __init__(
        self,
        config: Config,
        session_start: dt.datetime,
        target: Path,
        is_live: Callable[[], bool],
        exit_worker: Callable[[int], None],
    ):
        self.config = config
        self.streamer = config.streamer
        self.session_start = session_start
        self.target = target
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.state = ShutdownState.RUNNING
        self.exiting = False
        self.outcome: Optional[Outcome] = None
        self._is_live = is_live
        self._exit_worker = exit_worker
        self._force_exit: Optional[asyncio.TimerHandle] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    async def start(self, stream_url: str) -> int:
        """Spawn ffmpeg on ``stream_url``.

        Returns:
            The pid of the capture process

        Raises:
            SpawnError: ffmpeg could not be started
        """
        cmd = build_command(self.config, stream_url, self.target)
        logger.debug(f"stream url: {stream_url}")
        if not self.config.simulate:
            logger.debug(f"downloading stream to: {self.target}")
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SpawnError(f"failed to start subprocess: {e}") from e
        return self.proc.pid

    def request_stop(self, exit_code: int = 0) -> bool:
        """Ask ffmpeg to finish and schedule the worker exit.

        ``exit_code`` 0 is a user requested stop; anything else tells the
        supervisor to restart the worker. Returns False when a stop was
        already requested or the process has exited.
        """
        if self.state is not ShutdownState.RUNNING:
            return False
        self.state = ShutdownState.STOP_REQUESTED
        self.exiting = True
        self._send_quit()

        loop = asyncio.get_running_loop()
        self._force_exit = loop.call_later(
            self.config.stop_grace, self._exit_worker, exit_code
        )
        self.state = ShutdownState.FORCE_EXIT_SCHEDULED
        logger.debug(
            f"Stop requested for {self.streamer} recording, exiting with code {exit_code} in {self.config.stop_grace}s"
        )
        return True

    def _send_quit(self):
        stdin = self.proc.stdin if self.proc else None
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.write(b"q\n")
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Could not send quit to ffmpeg: {e}")

    async def wait(self) -> Outcome:
        """Wait for ffmpeg to exit, then classify and report the recording."""
        code = await self.proc.wait()
        self.state = ShutdownState.EXITED
        logger.debug(f"ffmpeg exited with code {code}")

        self.outcome = classify_exit(code, self.exiting, self._is_live())
        if self.outcome is Outcome.COMPLETED:
            logger.info(f"• Recording of '{self.streamer}' live stream completed")
        elif self.outcome is Outcome.ABORTED:
            logger.warning(
                f"• Recording of '{self.streamer}' live stream aborted; a partial stream may have been saved"
            )
        elif self.outcome is Outcome.ERROR:
            logger.error(
                f"• Recording of '{self.streamer}' live stream error; a partial stream may have been saved"
            )
        else:
            logger.warning(
                f"• Recording of '{self.streamer}' live stream ended with code {code} after the stream went offline; a partial stream may have been saved"
            )
        return self.outcome
