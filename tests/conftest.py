from __future__ import annotations

import asyncio
import datetime as dt
import sys
from pathlib import Path
from typing import List, Optional

import pytest

from config import Config


class FakeChannel:
    """Stands in for TwitchChannel."""

    def __init__(
        self,
        live: bool = True,
        title: str = "Bar/Baz",
        url: str = "https://example.invalid/live.m3u8",
        error: Optional[Exception] = None,
    ):
        self.live = live
        self.title = title
        self.url = url
        self.error = error
        self.requested_formats: List[tuple] = []

    async def is_live(self) -> bool:
        return self.live

    async def get_title(self) -> str:
        if self.error:
            raise self.error
        return self.title

    async def get_stream_url(self, preferences) -> str:
        self.requested_formats.append(tuple(preferences))
        return self.url


class IdleFeed:
    """A push feed that never sends anything."""

    async def run(self, handler):
        await asyncio.Event().wait()


def python_child(code: str) -> List[str]:
    return [sys.executable, "-c", code]


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        streamer="Foo",
        output_template=str(tmp_path / "recordings" / ":streamer -- :title"),
        restart_delay=0,
        stop_grace=0.01,
    )


@pytest.fixture
def session_start() -> dt.datetime:
    return dt.datetime(2021, 6, 15, 12, 30, 5, tzinfo=dt.timezone.utc)


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()
