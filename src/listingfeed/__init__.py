"""Import Telegram channel posts into a deduplicated listings board."""

__version__ = "0.1.0"
