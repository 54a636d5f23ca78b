"""Tray icon images drawn with Pillow."""

import logging
import os
from typing import Optional

from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

ICON_SIZE = 64
COLOR_OK = (46, 160, 67, 255)
COLOR_WARN = (219, 154, 4, 255)
COLOR_LOW = (207, 34, 46, 255)
COLOR_NO_DATA = (140, 140, 140, 255)
OUTLINE = (230, 230, 230, 255)
WARN_MARGIN = 20


def level_color(level: Optional[int], threshold: int, low: bool = False) -> tuple:
    if level is None:
        return COLOR_NO_DATA
    if low or level <= threshold:
        return COLOR_LOW
    if level <= threshold + WARN_MARGIN:
        return COLOR_WARN
    return COLOR_OK


def render_battery_icon(
    level: Optional[int],
    *,
    threshold: int = 20,
    low: bool = False,
    size: int = ICON_SIZE,
) -> Image.Image:
    """
    Draw a horizontal battery glyph filled to ``level`` percent.

    A missing level draws an empty grey outline. ``low`` forces the low-battery colour.
    """
    image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image)
    pad = size // 10
    top, bottom = size // 4, size - size // 4
    nub = size // 12
    body_right = size - pad - nub
    stroke = max(2, size // 20)
    color = level_color(level, threshold, low)

    draw.rectangle(
        (pad, top, body_right, bottom),
        outline=OUTLINE if level is not None else COLOR_NO_DATA,
        width=stroke,
    )
    draw.rectangle(
        (body_right, top + (bottom - top) // 3, body_right + nub, bottom - (bottom - top) // 3),
        fill=OUTLINE if level is not None else COLOR_NO_DATA,
    )
    if level:
        inner_left = pad + stroke + 1
        inner_right = body_right - stroke - 1
        fill_right = inner_left + (inner_right - inner_left) * min(level, 100) // 100
        draw.rectangle(
            (inner_left, top + stroke + 1, fill_right, bottom - stroke - 1), fill=color
        )
    return image


def load_icon(
    theme: str,
    level: Optional[int],
    *,
    threshold: int = 20,
    low: bool = False,
    size: int = ICON_SIZE,
) -> Image.Image:
    """Use ``theme`` as an image path when it names a file, otherwise draw the glyph."""
    if theme and os.path.isfile(theme):
        try:
            with Image.open(theme) as img:
                return img.convert("RGBA").resize((size, size))
        except OSError as exc:
            logger.warning("Unable to load tray icon %s: %s", theme, exc)
    return render_battery_icon(level, threshold=threshold, low=low, size=size)
