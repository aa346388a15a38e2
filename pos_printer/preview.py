"""
Software preview printer.

Renders receipts as monospaced text documents instead of talking to
hardware. Used when the operator picks it explicitly, and as the
caller-invoked fallback after a failed USB transfer.
"""

import asyncio
import html
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from PIL import Image, ImageDraw, ImageFont  # type: ignore

from .base import TransportDriver
from .encoder import decode
from .models import PrinterHandle, TransportType, utcnow

logger = logging.getLogger(__name__)

MONOSPACE_FONTS = ('DejaVuSansMono.ttf', 'LiberationMono-Regular.ttf', 'Courier New.ttf', 'cour.ttf')

PRINT_PAGE = """<!DOCTYPE html>
<html>
<head>
<title>{title}</title>
<style>body {{ font-family: monospace; white-space: pre; margin: 0 auto; width: {width}ch; }}</style>
</head>
<body onload="window.print(); setTimeout(function () {{ window.close(); }}, 500);">{body}</body>
</html>
"""


@dataclass
class PreviewDocument:
    """A rendered receipt."""

    printer_id: str
    title: str
    lines: List[str]
    line_width: int = 42
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    path: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def text(self) -> str:
        return '\n'.join(self.lines)

    def to_html(self) -> str:
        """Print-dialog page that opens the system dialog and closes itself."""
        return PRINT_PAGE.format(
            title=html.escape(self.title),
            width=self.line_width,
            body=html.escape(self.text),
        )

    def discard(self) -> None:
        """Delete the PNG rendering, if one was saved."""
        if not self.path:
            return
        try:
            os.remove(self.path)
            logger.debug(f"[Preview] Removed {self.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[Preview] Could not remove {self.path}: {e}")
        self.path = None


class PreviewConnection(TransportDriver):
    """Preview transport. Always available."""

    transport = TransportType.PREVIEW

    def __init__(self, config: dict = None):
        """
        Initialize preview driver.

        Args:
            config: ``preview`` section of the configuration
        """
        super().__init__(config)
        self.output_dir = self.config.get('output_dir', 'previews')
        self.font_size = self.config.get('font_size', 18)
        self.line_width = self.config.get('line_width', 42)

    async def connect(self, printer_id: str, display_name: str, **_) -> PrinterHandle:
        logger.info(f"[Preview] Preview printer '{printer_id}' ready")
        return PrinterHandle(
            id=printer_id,
            display_name=display_name,
            transport=TransportType.PREVIEW,
            native_device=self,
        )

    async def send(self, handle: PrinterHandle, data: bytes) -> PreviewDocument:
        return await self.render(handle, decode(data))

    async def render(self, handle: PrinterHandle, content: str) -> PreviewDocument:
        """
        Render plain receipt text to a preview document.

        Returns:
            The document, with ``path`` pointing at its PNG rendering
        """
        document = PreviewDocument(
            printer_id=handle.id,
            title=f"Print - {handle.display_name}",
            lines=content.split('\n'),
            line_width=self.line_width,
        )
        if self.output_dir:
            document.path = await asyncio.to_thread(self._save_image, document)
        logger.info(f"[Preview] Rendered {len(document.lines)} lines for '{handle.id}'")
        return document

    def _load_font(self):
        for name in MONOSPACE_FONTS:
            try:
                return ImageFont.truetype(name, self.font_size)
            except OSError:
                continue
        logger.debug("[Preview] No monospaced TrueType font found, using default font")
        return ImageFont.load_default()

    def _save_image(self, document: PreviewDocument) -> str:
        font = self._load_font()
        probe = ImageDraw.Draw(Image.new('L', (1, 1)))
        left, top, right, bottom = probe.textbbox((0, 0), 'M' * self.line_width, font=font)
        line_height = (bottom - top) + 4
        width = (right - left) + 20
        height = line_height * max(len(document.lines), 1) + 20

        image = Image.new('L', (width, height), 255)
        draw = ImageDraw.Draw(image)
        for index, line in enumerate(document.lines):
            draw.text((10, 10 + index * line_height), line, font=font, fill=0)

        os.makedirs(self.output_dir, exist_ok=True)
        path = os.path.join(self.output_dir, f"{document.id}.png")
        image.save(path)
        logger.debug(f"[Preview] Saved rendering to {path}")
        return path

    async def is_alive(self, handle: PrinterHandle) -> bool:
        return True

    async def disconnect(self, handle: PrinterHandle) -> None:
        handle.native_device = None
        handle.connected = False
        logger.info(f"[Preview] Printer '{handle.id}' disconnected")
