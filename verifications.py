"""
verifications.py — Start-up checks for stream_recorder
"""

import logging
import subprocess
import sys
from pathlib import Path

from config import Config
from utils import TOKEN_RE

logger = logging.getLogger("stream_recorder")


def output_root(template: str) -> Path:
    """The deepest directory of ``template`` that does not depend on a token."""
    parts = []
    for part in Path(template).parent.parts:
        if TOKEN_RE.search(part):
            break
        parts.append(part)
    return Path(*parts) if parts else Path(".")


def _verify_binary(path: str, name: str, tip: str, version_flag: str = "-version") -> bool:
    """Check that an external tool can be run."""
    is_win = sys.platform.startswith("win")
    try:
        result = subprocess.run(
            [path, version_flag],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            creationflags=subprocess.CREATE_NO_WINDOW if is_win else 0,
        )

        if result.returncode == 0:
            logger.debug(f"{name} found")
            return True

        logger.error(f"{name} check failed")
        return False
    except FileNotFoundError:
        logger.error(f"{name} not found. {tip}")
        return False
    except OSError as e:
        logger.error(f"{name} error: {e}")
        return False


def _verify_directory(path: Path) -> bool:
    """Create the recordings directory if needed and check it is writable."""
    if not path.exists():
        try:
            path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created recordings directory at {path}")
        except OSError as e:
            logger.error(f"Cannot create recordings directory at {path}: {e}")
            return False

    test_file = path / ".write_test"
    try:
        test_file.write_text("test")
        test_file.unlink()
    except OSError as e:
        logger.error(f"No write permission for recordings directory at {path}: {e}")
        return False
    return True


def verify_paths(config: Config) -> bool:
    """Verify the recordings directory and the external tools.

    Returns:
        bool: True if all verifications passed, False otherwise
    """
    logger.debug("Verifying file paths and dependencies...")

    if not config.simulate and not _verify_directory(output_root(config.output_template)):
        return False

    if not _verify_binary(
        config.ffmpeg_path,
        "FFmpeg",
        "Download from ffmpeg.org" if sys.platform.startswith("win") else "Use apt/yum install ffmpeg",
    ):
        return False

    if not _verify_binary(
        config.streamlink_path, "Streamlink", "Use pip install streamlink", "--version"
    ):
        return False

    logger.debug("File path verification successful")
    return True
