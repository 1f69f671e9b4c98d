#!/usr/bin/env python3
"""
stream_recorder.py — Twitch live stream recorder with crash restarts and clean shutdown

Runs as two processes: a supervisor that restarts the worker whenever it
exits with a non-zero code, and the worker that watches one channel and
records it with ffmpeg while it is live.
"""

import asyncio
import contextlib
import datetime as dt
import json
import logging
import logging.handlers
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Set

from api import ChannelError, PubSubFeed, PushEvent, TwitchChannel
from capture import CaptureSession, SpawnError
from config import Config, dump_config, load_config
from utils import FileReserver, is_network_reachable, render_filename
from verifications import verify_paths

STOP_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGHUP", "SIGTERM") if hasattr(signal, name)
)

# ───── logging setup ───── #
logger = logging.getLogger("stream_recorder")


def role_log_file(log_file: str, role: str) -> Path:
    """Debug log path for one process role.

    The supervisor and the worker each rotate their own file, so
    ``debug.log`` becomes ``debug.supervisor.log`` and ``debug.worker.log``.
    """
    path = Path(log_file).resolve()
    return path.with_name(f"{path.stem}.{role}{path.suffix}")


def setup_logging(config: Config, role: str):
    """Console logging, plus the debug log file of ``role`` when debugging."""
    logger.setLevel(logging.DEBUG if config.debug else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(ch)

    if config.debug and not config.dump_config:
        file_handler = logging.handlers.RotatingFileHandler(
            str(role_log_file(config.log_file, role)),
            maxBytes=5_000_000,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(f"%(asctime)s [%(levelname)s] {role}: %(message)s")
        )
        logger.addHandler(file_handler)


# ───── live state ───── #
@dataclass
class ChannelState:
    live: bool = False
    recording: bool = False
    session_start: Optional[dt.datetime] = None


class LiveStateTracker:
    """Owns the live/offline state of the channel.

    The start-up poll and the push feed both report through went_live() and
    went_offline(). Transitions are serialized by a lock, and a channel that
    is already live never starts a second recording.
    """

    def __init__(self, streamer: str, on_live: Callable[[dt.datetime], None]):
        self.streamer = streamer
        self.state = ChannelState()
        self._on_live = on_live
        self._lock = asyncio.Lock()

    async def went_live(self, at: Optional[dt.datetime] = None, source: str = "poll") -> bool:
        async with self._lock:
            if self.state.live:
                logger.debug(f"{self.streamer} already live, ignoring {source} notification")
                return False
            self.state.live = True
            self.state.session_start = at or dt.datetime.now(dt.timezone.utc)
            session_start = self.state.session_start

        logger.info(f"{self.streamer} is {'now ' if source == 'push' else ''}live")
        self._on_live(session_start)
        return True

    async def went_offline(self) -> bool:
        async with self._lock:
            if not self.state.live:
                return False
            self.state.live = False
            self.state.session_start = None

        logger.info(f"{self.streamer} is offline")
        return True

    def set_recording(self, recording: bool):
        self.state.recording = recording


# ───── Worker ───── #
class Worker:
    """Watches one channel and records every live period.

    Exits with 0 on a user requested stop and with 1 on any failure, which
    the supervisor takes as a request to restart.
    """

    def __init__(
        self,
        config: Config,
        channel: Optional[TwitchChannel] = None,
        feed: Optional[PubSubFeed] = None,
        reserver: Optional[FileReserver] = None,
    ):
        self.config = config
        self.channel = channel or TwitchChannel(config)
        self.feed = feed or PubSubFeed(config)
        self.reserver = reserver or FileReserver()
        self.tracker = LiveStateTracker(config.streamer, self._on_live)
        self.sessions: List[CaptureSession] = []
        self.tasks: Set[asyncio.Task] = set()
        self.exit_code: Optional[int] = None
        self._done: Optional[asyncio.Event] = None

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        self._done = asyncio.Event()
        if self.exit_code is not None:
            self._done.set()

        for sig in STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._on_signal, sig)
        loop.set_exception_handler(self._on_loop_exception)

        feed_task = self._spawn_task(self.feed.run(self.on_push_event))
        poll_task = self._spawn_task(self.poll())
        try:
            await self._done.wait()
        finally:
            for task in (poll_task, feed_task):
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(poll_task, feed_task, return_exceptions=True)
            for sig in STOP_SIGNALS:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(sig)
            loop.set_exception_handler(None)
        return self.exit_code

    def exit(self, code: int):
        """Finish run() with ``code``. The first code wins."""
        if self.exit_code is None:
            self.exit_code = code
        if self._done is not None:
            self._done.set()

    def abort(self, exit_code: int):
        """Stop active recordings gracefully, or exit straight away if there are none."""
        if not self.sessions:
            self.exit(exit_code)
            return
        for session in self.sessions:
            session.request_stop(exit_code)

    def _on_signal(self, sig: int):
        logger.info(f"Received {signal.Signals(sig).name}, stopping")
        self.abort(0)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict):
        logger.error(
            f"Unhandled error: {context.get('message')}", exc_info=context.get("exception")
        )
        self.abort(1)

    def _spawn_task(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self.tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Unexpected error in worker task", exc_info=exc)
            self.abort(1)

    async def poll(self):
        """One-shot live check at start-up."""
        try:
            live = await self.channel.is_live()
        except ChannelError as e:
            logger.error(f"Unable to check if {self.config.streamer} is live: {e}")
            return
        if live:
            await self.tracker.went_live(source="poll")
        else:
            logger.info(f"{self.config.streamer} is offline")

    async def on_push_event(self, event: PushEvent):
        if event.kind == "connect":
            logger.debug("Connected to Twitch PubSub")
        elif event.kind == "close":
            logger.debug("Disconnected from Twitch PubSub")
        elif event.kind == "raw":
            if self.config.verbose:
                logger.debug(json.dumps(event.payload, indent=2))
        elif event.kind == "stream-up":
            if not self.config.verbose:
                logger.debug(json.dumps(event.payload, indent=2))
            await self.tracker.went_live(at=event.time, source="push")
        elif event.kind == "stream-down":
            if not self.config.verbose:
                logger.debug(json.dumps(event.payload, indent=2))
            await self.tracker.went_offline()

    def _on_live(self, session_start: dt.datetime):
        self._spawn_task(self.record(session_start))

    async def record(self, session_start: dt.datetime):
        """Record one live period from title lookup to ffmpeg exit.

        A failure to resolve the title, the stream url or the capture process
        ends the worker with exit code 1.

        Args:
            session_start: When the channel went live, used for the filename
        """
        streamer = self.config.streamer
        try:
            title = await self.channel.get_title()
            basefile = render_filename(self.config, session_start, title) + self.config.extension
            target = await self.reserver.reserve(basefile)
            stream_url = await self.channel.get_stream_url(self.config.stream_format)
        except ChannelError as e:
            logger.error(f"• Unable to start recording '{streamer}' live stream: {e}")
            self.exit(1)
            return

        session = CaptureSession(
            self.config,
            session_start,
            target,
            is_live=lambda: self.tracker.state.live,
            exit_worker=self.exit,
        )
        try:
            await session.start(stream_url)
        except SpawnError as e:
            logger.error(f"• Unable to start recording '{streamer}' live stream")
            logger.debug(str(e))
            self.exit(1)
            return

        self.sessions.append(session)
        self.tracker.set_recording(True)
        logger.info(f"• Recording '{streamer}' live stream to {target.name}")
        try:
            await session.wait()
        finally:
            self.sessions.remove(session)
            self.tracker.set_recording(bool(self.sessions))


# ───── Supervisor ───── #
class Supervisor:
    """Runs the worker process and restarts it after a crash.

    Before each restart it waits ``config.restart_delay`` seconds and checks
    that DNS resolves. It keeps trying for as long as it takes.
    """

    def __init__(
        self,
        config: Config,
        worker_args: Sequence[str] = (),
        spawn: Optional[Callable[[], Awaitable[asyncio.subprocess.Process]]] = None,
        probe: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.config = config
        self.worker_args = list(worker_args)
        self._spawn = spawn or self._spawn_worker
        self._probe = probe or (lambda: is_network_reachable(config.probe_host))
        self.attempts = 0
        self.stopping = False
        self.proc = None
        self._restart: Optional[asyncio.Task] = None

    async def _spawn_worker(self) -> asyncio.subprocess.Process:
        cmd = [sys.executable, str(Path(__file__).resolve()), "--worker", *self.worker_args]
        return await asyncio.create_subprocess_exec(*cmd)

    def request_stop(self, sig: Optional[int] = None):
        """Manual quit: never restart again and pass the signal on to the worker."""
        self.stopping = True
        if self._restart and not self._restart.done():
            self._restart.cancel()
        if sig is not None and self.proc is not None and self.proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.proc.send_signal(sig)

    async def run(self) -> int:
        """Keep the worker running until it exits cleanly or we are told to stop.

        A non-zero worker exit starts the restart loop: wait
        ``config.restart_delay`` seconds, check DNS, and spawn a new worker
        once the network answers.

        Returns:
            The supervisor's own exit code, 0 once the worker exits with 0 or
            a stop signal was received
        """
        loop = asyncio.get_running_loop()
        for sig in STOP_SIGNALS:
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self.request_stop, sig)

        try:
            self.proc = await self._spawn()
            while True:
                code = await self.proc.wait()
                if code == 0 or self.stopping:
                    return 0

                logger.error(f"Application unexpectedly exited with code: {code}")
                logger.info("Restarting...")
                self._restart = asyncio.create_task(self._restart_worker())
                try:
                    self.proc = await self._restart
                except asyncio.CancelledError:
                    return 0
        finally:
            for sig in STOP_SIGNALS:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(sig)

    async def _restart_worker(self):
        while True:
            await asyncio.sleep(self.config.restart_delay)
            if await self._probe():
                proc = await self._spawn()
                self.attempts = 0
                return proc
            self.attempts += 1
            logger.warning(
                f"No internet connection detected trying again... (attempts {self.attempts})"
            )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Application entry point.

    Without ``--worker`` this is the supervisor: it verifies the environment
    and keeps a worker process running. With ``--worker`` it is the worker.
    """
    try:
        config, args = load_config(argv)
    except FileNotFoundError as e:
        setup_logging(Config(), "supervisor")
        logger.error(str(e))
        return 1
    setup_logging(config, "worker" if args.worker else "supervisor")

    if config.dump_config:
        target = dump_config(config)
        logger.info(f"Dumping config to '{target}'")
        return 0

    try:
        if args.worker:
            return asyncio.run(Worker(config).run())

        if config.verbose:
            logger.info("Verbose Debug Mode Enabled")
        elif config.debug:
            logger.info("Debug Mode Enabled")
        if config.simulate:
            logger.info("Downloading Disabled")

        if not verify_paths(config):
            logger.error("Exiting due to file system permission/access errors.")
            return 1

        worker_args = sys.argv[1:] if argv is None else list(argv)
        return asyncio.run(Supervisor(config, worker_args).run())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return 0


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
