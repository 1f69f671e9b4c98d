"""
api.py — Twitch channel and PubSub clients for stream_recorder
"""

import asyncio
import datetime as dt
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from config import Config

logger = logging.getLogger("stream_recorder")

PUBSUB_URL = "wss://pubsub-edge.twitch.tv"
PING_INTERVAL = 240  # Twitch drops clients that do not PING within 5 minutes
PONG_TIMEOUT = 10
PROBE_TIMEOUT = 60
RECONNECT_MIN_WAIT = 1
RECONNECT_MAX_WAIT = 120
NO_STREAMS = "No playable streams"


class ChannelError(Exception):
    """The channel API could not answer (network error, channel gone, streamlink missing)."""


class ChannelOffline(ChannelError):
    """streamlink found no playable streams, the channel is not live."""


class FeedDropped(Exception):
    """The PubSub connection was lost or Twitch asked us to reconnect."""


RETRYABLE = (aiohttp.ClientError, asyncio.TimeoutError, FeedDropped)


def channel_url(streamer: str) -> str:
    return f"https://twitch.tv/{streamer.strip().lower()}"


def streamlink_qualities(preferences: Sequence[str]) -> str:
    """Convert a preference list into streamlink's fallback syntax.

    ``source`` is what Twitch calls the original quality; streamlink calls it
    ``best``.
    """
    qualities = ["best" if q.lower() == "source" else q for q in preferences]
    return ",".join(qualities or ["best"])


class TwitchChannel:
    """Answers "is the channel live", "what is the title" and "where is the stream"."""

    def __init__(self, config: Config):
        self.config = config
        self.name = config.streamer
        self.url = channel_url(config.streamer)

    async def _run(self, *args: str, check: bool = True) -> bytes:
        """Run streamlink and return its stdout.

        With ``check`` off a failing exit still returns stdout, as long as
        there is any, so ``--json`` error documents can be read.
        """
        cmd = [self.config.streamlink_path, *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ChannelError(f"Unable to run streamlink: {e}") from e
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=PROBE_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0 and (check or not out.strip()):
            message = err.decode(errors="ignore").strip() or out.decode(errors="ignore").strip()
            raise ChannelError(message or f"streamlink exited with {proc.returncode}")
        return out

    async def _metadata(self) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type((asyncio.TimeoutError, json.JSONDecodeError)),
            reraise=True,
        ):
            with attempt:
                out = await self._run("--json", self.url, "best", check=False)
                info = json.loads(out)
        if "error" in info:
            if NO_STREAMS in str(info["error"]):
                raise ChannelOffline(info["error"])
            raise ChannelError(info["error"])
        return info

    async def is_live(self) -> bool:
        """Ask streamlink whether the channel is live.

        Returns:
            True when streams are available, False when streamlink reports
            no playable streams

        Raises:
            ChannelError: streamlink could not be run or gave no usable answer
        """
        try:
            await self._metadata()
        except ChannelOffline as e:
            logger.debug(f"{self.name} reported as offline: {e}")
            return False
        except (asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise ChannelError(f"Unable to check if {self.name} is live: {e}") from e
        return True

    async def get_title(self) -> str:
        try:
            info = await self._metadata()
        except (asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise ChannelError(f"Unable to fetch title for {self.name}: {e}") from e
        meta = info.get("metadata", {}) or {}
        return meta.get("title") or info.get("title") or ""

    async def get_stream_url(self, preferences: Sequence[str]) -> str:
        try:
            out = await self._run("--stream-url", self.url, streamlink_qualities(preferences))
        except asyncio.TimeoutError as e:
            raise ChannelError(f"Timed out resolving stream url for {self.name}") from e
        url = out.decode(errors="ignore").strip()
        if not url:
            raise ChannelError(f"streamlink returned no stream url for {self.name}")
        return url


# ───── PubSub ───── #
@dataclass
class PushEvent:
    kind: str  # connect, close, raw, stream-up, stream-down
    time: Optional[dt.datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict)


def parse_message(raw: str, topic: str) -> List[PushEvent]:
    """Turn one PubSub frame into events.

    Every frame yields a ``raw`` event; video-playback messages for ``topic``
    also yield ``stream-up`` or ``stream-down``. Raises FeedDropped when Twitch
    asks the client to reconnect.
    """
    data = json.loads(raw)
    events = [PushEvent("raw", payload=data)]
    kind = data.get("type")

    if kind == "RECONNECT":
        raise FeedDropped("server requested reconnect")
    if kind == "RESPONSE" and data.get("error"):
        logger.error(f"PubSub LISTEN failed: {data['error']}")
    if kind != "MESSAGE":
        return events

    body = data.get("data", {}) or {}
    if body.get("topic") != topic:
        return events
    message = json.loads(body.get("message") or "{}")
    msg_type = message.get("type")

    if msg_type == "stream-up":
        server_time = message.get("server_time")
        when = (
            dt.datetime.fromtimestamp(float(server_time), tz=dt.timezone.utc)
            if server_time is not None
            else dt.datetime.now(dt.timezone.utc)
        )
        events.append(PushEvent("stream-up", time=when, payload=message))
    elif msg_type == "stream-down":
        events.append(PushEvent("stream-down", payload=message))
    return events


class PubSubFeed:
    """Persistent subscription to a channel's video-playback topic.

    Reconnects on its own whenever the connection drops. Failed connection
    attempts back off exponentially up to ``RECONNECT_MAX_WAIT`` seconds; once
    a connection has been made the backoff starts over, so a routine
    ``RECONNECT`` from Twitch is followed by a quick reconnect.
    """

    def __init__(self, config: Config, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self.topic = f"video-playback.{config.streamer.lower()}"
        self.connected = False
        self._sleep = sleep

    def _should_retry(self, exc: BaseException) -> bool:
        # a dropped connection leaves the retry loop so the backoff resets
        return isinstance(exc, RETRYABLE) and not self.connected

    async def run(self, handler: Callable[[PushEvent], Awaitable[None]]):
        while True:
            self.connected = False
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_never,
                    wait=wait_exponential(
                        multiplier=1, min=RECONNECT_MIN_WAIT, max=RECONNECT_MAX_WAIT
                    ),
                    retry=retry_if_exception(self._should_retry),
                    sleep=self._sleep,
                ):
                    with attempt:
                        await self._listen(handler)
            except RETRYABLE as e:
                logger.debug(f"PubSub connection dropped ({e}), reconnecting")
                await self._sleep(RECONNECT_MIN_WAIT)

    async def _listen(self, handler: Callable[[PushEvent], Awaitable[None]]):
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(PUBSUB_URL) as ws:
                await ws.send_json(
                    {
                        "type": "LISTEN",
                        "nonce": uuid.uuid4().hex,
                        "data": {"topics": [self.topic]},
                    }
                )
                self.connected = True
                await handler(PushEvent("connect"))
                try:
                    await self._read(ws, handler)
                finally:
                    await handler(PushEvent("close"))

    async def _read(self, ws: aiohttp.ClientWebSocketResponse, handler):
        awaiting_pong = False
        while True:
            try:
                msg = await ws.receive(
                    timeout=PONG_TIMEOUT if awaiting_pong else PING_INTERVAL
                )
            except asyncio.TimeoutError:
                if awaiting_pong:
                    raise FeedDropped("no PONG received")
                await ws.send_json({"type": "PING"})
                awaiting_pong = True
                continue

            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                raise FeedDropped(f"websocket closed ({msg.type.name})")
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue

            try:
                events = parse_message(msg.data, self.topic)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring malformed PubSub frame: {msg.data!r}")
                continue
            if events[0].payload.get("type") == "PONG":
                awaiting_pong = False
            for event in events:
                await handler(event)
