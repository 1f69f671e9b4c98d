# Required settings
STREAMER = "TwitchUser"  # Twitch channel to monitor
OUTPUT_TEMPLATE = "./recordings/:shortYear.:month.:day :period -- :streamer -- :title"
STREAM_FORMAT = ["source"]  # qualities in order of preference e.g. ["1080p60", "720p60", "source"]

# Time settings used for file names
TIMEZONE = "Europe/London"
TIMEZONE_FORMAT = "en-GB"  # en-GB or en-US

# Optional settings
FFMPEG_PATH = "ffmpeg"
STREAMLINK_PATH = "streamlink"
LOG_FILE = "debug.log"  # only written with --debug
RESTART_DELAY = 1  # seconds between restart attempts after a crash
