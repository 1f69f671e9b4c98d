"""
utils.py — File naming, file reservation and network helpers for stream_recorder
"""

import asyncio
import datetime as dt
import logging
import os
import re
import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Set, Union
from zoneinfo import ZoneInfo

from config import Config

logger = logging.getLogger("stream_recorder")

# Characters that are unsafe in a streamer name or title on any filesystem
UNSAFE_NAME_RE = re.compile(r'[/\\?%*:|"<>]')
# Left over after tokens have been substituted
UNSAFE_PATH_RE = re.compile(r'[?%*:|"<>]')
POSIX_UNSAFE_RE = re.compile(r"[!?%*:;|\"'<>`\0]")
WINDOWS_DRIVE_RE = re.compile(r"^([A-Za-z])-\\")

TOKEN_RE = re.compile(
    r":(streamer|title|date|time|day|month|year|shortYear|period)", re.IGNORECASE
)

TIME_FORMATS = ("en-GB", "en-US")


def sanitize(text: str, substitute: str) -> str:
    """Replace filesystem unsafe characters in ``text``.

    Args:
        text: A streamer name or stream title
        substitute: What each unsafe character is replaced with

    Returns:
        The text with every unsafe character replaced
    """
    return UNSAFE_NAME_RE.sub(substitute, text)


def substitute_tokens(template: str, values: Dict[str, str]) -> str:
    """Replace every known ``:token`` in ``template`` case-insensitively.

    ``values`` is keyed by lower case token name. Tokens without a value are
    left untouched.
    """

    def _replace(match: re.Match) -> str:
        return values.get(match.group(1).lower(), match.group(0))

    return TOKEN_RE.sub(_replace, template)


def template_values(
    config: Config, session_start: dt.datetime, title: str
) -> Dict[str, str]:
    """Build the token values for one recording session."""
    if session_start.tzinfo is None:
        session_start = session_start.replace(tzinfo=dt.timezone.utc)
    local = session_start.astimezone(ZoneInfo(config.timezone))

    if config.timezone_format == "en-US":
        time = f"{int(local.strftime('%I'))}-{local:%M-%S}"
    else:
        time = f"{local:%H-%M-%S}"

    return {
        "streamer": sanitize(config.streamer, config.streamer_substitute),
        "title": sanitize(title, config.title_substitute),
        "date": f"{local:%d.%m.%Y}",
        "time": time,
        "day": f"{local:%d}",
        "month": f"{local:%m}",
        "year": f"{local:%Y}",
        "shortyear": f"{local:%y}",
        "period": "AM" if local.hour < 12 else "PM",
    }


def normalize_path(filename: str, platform: str = sys.platform) -> str:
    """Apply path separator and character rules for the target platform."""
    filename = UNSAFE_PATH_RE.sub("-", filename)
    if platform == "win32":
        filename = filename.replace("/", "\\")
        filename = UNSAFE_PATH_RE.sub("-", filename)
        filename = WINDOWS_DRIVE_RE.sub(r"\1:\\", filename)
    else:
        filename = filename.replace("\\", "/")
        filename = POSIX_UNSAFE_RE.sub("-", filename)
    return filename


def render_filename(
    config: Config,
    session_start: dt.datetime,
    title: str,
    platform: str = sys.platform,
) -> str:
    """Render ``config.output_template`` for a session, without extension.

    The result contains no characters that are illegal on the target
    platform. Its length is not limited.

    Args:
        config: Supplies the template, streamer, time zone and substitutes
        session_start: When the channel went live; naive values are UTC
        title: The stream title as reported by the channel API
        platform: ``sys.platform`` value whose path rules apply

    Returns:
        The filename, still relative if the template is relative
    """
    rendered = substitute_tokens(
        config.output_template, template_values(config, session_start, title)
    )
    return normalize_path(rendered, platform)


# ───── file reservation ───── #
@dataclass(frozen=True)
class ReservationRequest:
    base: Path
    candidate: Path
    part: int = 0


@dataclass(frozen=True)
class Final:
    path: Path


@dataclass(frozen=True)
class Continue:
    request: ReservationRequest


def part_path(base: Path, part: int) -> Path:
    return base.with_name(f"{base.stem} (part {part}){base.suffix}")


class FileReserver:
    """Find a path for a new recording that will not clobber an existing one.

    If ``X.mp4`` is free it is returned as is. If it is taken and no numbered
    parts exist yet, the existing file is renamed to ``X (part 1).mp4`` and
    ``X (part 2).mp4`` is returned. Once numbering has started the first free
    ``X (part N).mp4`` is returned.

    Paths handed out by this reserver count as taken even before anything has
    been written to them.
    """

    def __init__(self):
        self.reserved: Set[Path] = set()

    def _taken(self, path: Path) -> bool:
        return path in self.reserved or path.exists()

    def probe(self, request: ReservationRequest) -> Union[Final, Continue]:
        """Run one existence check and decide the next step."""
        base, part = request.base, request.part

        if part == 0:
            first = part_path(base, 1)
            if self._taken(first):
                return Continue(ReservationRequest(base, first, 1))
            if not self._taken(request.candidate):
                return Final(request.candidate)
            try:
                base.rename(first)
                logger.debug(f"renamed {base} -> {first}")
            except OSError as e:
                logger.debug(f"Could not rename {base} -> {first}: {e}")
            return Continue(ReservationRequest(base, part_path(base, 2), 2))

        if self._taken(request.candidate):
            return Continue(ReservationRequest(base, part_path(base, part + 1), part + 1))
        return Final(request.candidate)

    async def reserve(self, basefile: Union[str, Path]) -> Path:
        """Claim the path the next recording of ``basefile`` should be written to.

        Creates the parent directory and may rename an existing ``basefile``
        to its ``(part 1)`` name.

        Args:
            basefile: The rendered filename including its extension

        Returns:
            An absolute path that no file and no earlier reservation uses
        """
        base = Path(os.path.abspath(basefile))
        await asyncio.to_thread(base.parent.mkdir, parents=True, exist_ok=True)

        step: Union[Final, Continue] = Continue(ReservationRequest(base, base))
        while isinstance(step, Continue):
            step = await asyncio.to_thread(self.probe, step.request)

        self.reserved.add(step.path)
        return step.path


# ───── network ───── #
async def is_network_reachable(host: str = "twitch.tv") -> bool:
    """Best-effort DNS lookup used to gate restarts.

    Returns:
        True when ``host`` resolves, False on any resolver error
    """
    loop = asyncio.get_running_loop()
    try:
        await loop.getaddrinfo(host, None)
    except (socket.gaierror, OSError) as e:
        logger.debug(f"DNS lookup for {host} failed: {e}")
        return False
    return True
