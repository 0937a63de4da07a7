"""
Renders shareable social media cards for passages.
"""

import io
import logging
import os
from typing import Optional

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

CARD_WIDTH = 1200
CARD_HEIGHT = 630
MARGIN = 50
LINE_HEIGHT = 36
MAX_PASSAGE_LINES = 8
ILLUSTRATION_WIDTH = 400

BACKGROUND = "#f8f9fa"
ACCENT = "#3b82f6"
TEXT = "#1f2937"
MUTED = "#6b7280"


def wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: float,
              max_lines: int = MAX_PASSAGE_LINES) -> list:
    """
    Break text into lines no wider than max_width.
    Text past the last allowed line is cut and marked with '...'.
    """
    lines = []
    line = ""
    for word in text.split():
        candidate = f"{line} {word}".strip()
        if line and draw.textlength(candidate, font=font) > max_width:
            lines.append(line)
            line = word
            if len(lines) == max_lines:
                lines[-1] += " ..."
                return lines
        else:
            line = candidate
    if line:
        lines.append(line)
    return lines


def render_passage_card(title: str, passage: str, shared_by: str, share_url: str,
                        image_path: Optional[str] = None) -> bytes:
    """Draw a 1200x630 passage card and return it as PNG bytes."""
    canvas = Image.new("RGB", (CARD_WIDTH, CARD_HEIGHT), BACKGROUND)
    draw = ImageDraw.Draw(canvas)

    draw.rectangle([10, 10, CARD_WIDTH - 10, CARD_HEIGHT - 10], outline=ACCENT, width=10)

    draw.text((MARGIN, 40), "VisNovel", fill=ACCENT, font=ImageFont.load_default(size=40))
    draw.text((MARGIN, 110), f'From "{title}"', fill=TEXT, font=ImageFont.load_default(size=36))

    text_width = CARD_WIDTH - 2 * MARGIN
    illustration = None
    if image_path and os.path.exists(image_path):
        try:
            illustration = Image.open(image_path).convert("RGB")
            text_width -= ILLUSTRATION_WIDTH + MARGIN
        except OSError as e:
            logger.warning("Could not load illustration %s: %s", image_path, e)

    body_font = ImageFont.load_default(size=24)
    lines = wrap_text(draw, passage, body_font, text_width)
    y = 180
    for line in lines:
        draw.text((MARGIN, y), line, fill=TEXT, font=body_font)
        y += LINE_HEIGHT

    draw.text((MARGIN, y + LINE_HEIGHT), f"Shared by {shared_by}", fill=MUTED,
              font=ImageFont.load_default(size=24))
    draw.text((MARGIN, CARD_HEIGHT - 70), share_url, fill=ACCENT,
              font=ImageFont.load_default(size=20))

    if illustration is not None:
        height = int(illustration.height / illustration.width * ILLUSTRATION_WIDTH)
        height = min(height, CARD_HEIGHT - 180 - MARGIN)
        resized = illustration.resize((ILLUSTRATION_WIDTH, height))
        canvas.paste(resized, (CARD_WIDTH - ILLUSTRATION_WIDTH - MARGIN, 180))

    buffer = io.BytesIO()
    canvas.save(buffer, format="PNG")
    return buffer.getvalue()
