"""
ESC/POS command encoding for receipt text.
"""

from escpos.constants import ESC, GS, HW_INIT, PAPER_FULL_CUT  # type: ignore
from escpos.printer import Dummy  # type: ignore

ALIGN_CENTER = ESC + b'a\x01'
FONT_DOUBLE = GS + b'!\x11'  # double width and height
FEED_LINES = b'\n\n\n'

PREAMBLE = HW_INIT + ALIGN_CENTER + FONT_DOUBLE
TRAILER = FEED_LINES + PAPER_FULL_CUT


def encode(content: str) -> bytes:
    """
    Convert receipt text into a thermal printer command stream.

    Args:
        content: Plain text with embedded newlines

    Returns:
        Initialize, center, double font, UTF-8 content, three line feeds, full cut
    """
    buffer = Dummy()
    buffer._raw(PREAMBLE)
    buffer._raw(content.encode('utf-8'))
    buffer._raw(TRAILER)
    return buffer.output


def decode(data: bytes) -> str:
    """Recover the receipt text from a stream produced by encode()."""
    if data.startswith(PREAMBLE) and data.endswith(TRAILER):
        data = data[len(PREAMBLE):len(data) - len(TRAILER)]
    return data.decode('utf-8', errors='replace')
