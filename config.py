"""
config.py — Settings for stream_recorder

Settings are merged once at start-up (defaults, then the env.py settings
module, then command line flags) into a frozen Config that is passed to every
component.
"""

import argparse
import dataclasses
import importlib.util
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

logger = logging.getLogger("stream_recorder")

SCRIPT_DIR = Path(__file__).parent.resolve()
DEFAULT_SETTINGS = "env.py"
DUMP_FILE = "config_dump.json"


@dataclass(frozen=True)
class Config:
    streamer: str = "TwitchUser"
    stream_format: Tuple[str, ...] = ("source",)
    output_template: str = os.path.join(
        ".", "recordings", ":shortYear.:month.:day :period -- :streamer -- :title"
    )
    timezone: str = "Europe/London"
    timezone_format: str = "en-GB"
    log_file: str = "debug.log"
    debug: bool = False
    verbose: bool = False
    simulate: bool = False
    dump_config: bool = False
    ffmpeg_path: str = "ffmpeg"
    streamlink_path: str = "streamlink"
    streamer_substitute: str = "_"
    title_substitute: str = "-"
    extension: str = ".mp4"
    restart_delay: float = 1.0
    stop_grace: float = 2.0
    probe_host: str = "twitch.tv"

    def __post_init__(self):
        # verbose logging is written to the debug log
        if self.verbose and not self.debug:
            object.__setattr__(self, "debug", True)
        object.__setattr__(self, "stream_format", tuple(self.stream_format))
        object.__setattr__(self, "restart_delay", max(0.0, float(self.restart_delay)))
        object.__setattr__(self, "stop_grace", max(0.0, float(self.stop_grace)))

    def as_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["stream_format"] = list(self.stream_format)
        return data


def load_settings_module(path: Optional[str]) -> Dict[str, Any]:
    """Read UPPER_CASE constants from a settings module.

    Uses ``path`` when given, otherwise ``env.py`` in the working directory or
    next to this file. A missing default settings file is not an error.
    """
    if path:
        candidates = [Path(path)]
    else:
        candidates = [Path.cwd() / DEFAULT_SETTINGS, SCRIPT_DIR / DEFAULT_SETTINGS]

    for candidate in candidates:
        if not candidate.is_file():
            continue
        spec = importlib.util.spec_from_file_location("env", candidate)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        logger.debug(f"Loaded settings from {candidate}")
        return {k: getattr(module, k) for k in dir(module) if k.isupper()}

    if path:
        raise FileNotFoundError(f"Settings file not found: {path}")
    return {}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stream-recorder",
        description="Monitor a Twitch streamer and record the live stream to disk automatically.",
    )
    parser.add_argument("--streamer", help="Twitch streamer to monitor")
    parser.add_argument(
        "--output-template",
        "--output_template",
        dest="output_template",
        help="Template and path for recorded streams; accepts :streamer, :title, "
        ":date, :time, :day, :month, :year, :shortYear, :period",
    )
    parser.add_argument(
        "--format",
        dest="stream_format",
        help="Qualities in order of preference separated by / e.g. 1080p60/720p60/source",
    )
    parser.add_argument("--tz", dest="timezone", help="Timezone used when dating saved streams")
    parser.add_argument(
        "--tz-format",
        "--tz_format",
        dest="timezone_format",
        choices=["en-GB", "en-US"],
        help="Time format used in file names",
    )
    parser.add_argument("--config", help="Path to the settings module (default: ./env.py)")

    dev = parser.add_argument_group("developer options")
    dev.add_argument("--log", dest="log_file", help="Debug log file (default: debug.log)")
    dev.add_argument("--debug", action="store_true", default=None, help="Log data to the debug log file")
    dev.add_argument(
        "--verbose",
        action="store_true",
        default=None,
        help="Log every push feed message as well, implies --debug",
    )
    dev.add_argument(
        "--simulate",
        action="store_true",
        default=None,
        help="Disable writing to disk (downloaded stream is discarded)",
    )
    dev.add_argument(
        "--dump-config",
        "--dump_config",
        dest="dump_config",
        action="store_true",
        default=None,
        help=f"Dump the merged config to '{DUMP_FILE}' then exit",
    )
    parser.add_argument("--worker", action="store_true", help=argparse.SUPPRESS)
    return parser


def load_config(argv: Optional[Sequence[str]] = None) -> Tuple[Config, argparse.Namespace]:
    """Merge defaults, the settings module and command line flags."""
    args = build_parser().parse_args(argv)
    known = {f.name for f in dataclasses.fields(Config)}

    values: Dict[str, Any] = {}
    for key, value in load_settings_module(args.config).items():
        name = key.lower()
        if name in known:
            values[name] = value
        else:
            logger.debug(f"Ignoring unknown setting {key}")

    for name in known:
        value = getattr(args, name, None)
        if value is None:
            continue
        if name == "stream_format":
            value = [q for q in value.split("/") if q]
        values[name] = value

    return Config(**values), args


def dump_config(config: Config, path: str = DUMP_FILE) -> Path:
    target = Path(path)
    target.write_text(json.dumps(config.as_dict(), indent=2), encoding="utf-8")
    return target
