"""Charset detection for diff content that is not UTF-8."""

import logging

from charset_normalizer import from_bytes

logger = logging.getLogger(__name__)


def detect_encoding(content: bytes) -> str | None:
    """Return the codec name for ``content``, or None when nothing plausible matches."""
    try:
        content.decode("utf-8")
        return "utf-8"
    except UnicodeDecodeError:
        pass

    best = from_bytes(content).best()
    if best is None:
        logger.debug("Could not detect encoding of diff content")
        return None
    return best.encoding


def decode_lines(raw_lines: list[bytes]) -> list[str]:
    """Decode lines of one file with a single detected charset."""
    if not raw_lines:
        return []
    encoding = detect_encoding(b"\n".join(raw_lines))
    if encoding is None or encoding == "utf-8":
        return [line.decode("utf-8", errors="replace") for line in raw_lines]
    try:
        return [line.decode(encoding) for line in raw_lines]
    except (UnicodeDecodeError, LookupError):
        logger.debug(f"Detected charset {encoding} did not decode cleanly, falling back to UTF-8")
        return [line.decode("utf-8", errors="replace") for line in raw_lines]
