from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from PIL import Image, ImageColor, ImageDraw, ImageFont

from .core import Hyperstack, render_rgb

logger = logging.getLogger(__name__)

LOCATIONS = ("lower right", "lower left", "upper right", "upper left")
MARGIN_PX = 10
VIDEO_GUIDANCE = (
    "AVI export needs OpenCV, which is not installed.\n\n"
    "Install it with:\n    pip install opencv-python\n"
    "then restart the application."
)


class OptionalFeatureError(RuntimeError):
    """An optional companion library is missing; the message tells the user how to get it."""


@dataclass
class ScaleBarOptions:
    width_units: float = 10.0
    height_px: int = 4
    color: str = "white"
    location: str = "lower right"
    label: bool = True


@dataclass
class TimeBarOptions:
    height_px: int = 4
    color: str = "white"
    label: bool = True
    unit: str = "s"


def scale_bar_length(stack: Hyperstack, width_units: float) -> int:
    return int(round(width_units / stack.calibration.pixel_width))


def add_scale_bar(stack: Hyperstack, options: Optional[ScaleBarOptions] = None) -> Hyperstack:
    """Copy of ``stack`` with a calibrated scale bar burned into every plane."""
    options = options or ScaleBarOptions()
    if options.width_units <= 0:
        raise ValueError("Scale bar width must be positive.")
    if options.location not in LOCATIONS:
        raise ValueError(f"Unknown scale bar location: {options.location}")
    length = scale_bar_length(stack, options.width_units)
    if length < 1 or length + 2 * MARGIN_PX > stack.width:
        raise ValueError("Scale bar does not fit in the image.")

    font = ImageFont.load_default()
    label = f"{options.width_units:g} {stack.calibration.unit}" if options.label else ""
    mask = Image.new("L", stack.size, 0)
    draw = ImageDraw.Draw(mask)
    x0 = MARGIN_PX if options.location.endswith("left") else stack.width - MARGIN_PX - length
    if options.location.startswith("lower"):
        bar_y = stack.height - MARGIN_PX - options.height_px
    else:
        bar_y = MARGIN_PX + (_text_height(draw, label, font) + 2 if label else 0)
    draw.rectangle((x0, bar_y, x0 + length - 1, bar_y + options.height_px - 1), fill=255)
    if label:
        text_w = _text_width(draw, label, font)
        text_h = _text_height(draw, label, font)
        text_x = x0 + max((length - text_w) // 2, 0)
        draw.text((text_x, bar_y - text_h - 2), label, fill=255, font=font)

    binary = mask.point(lambda v: 255 if v >= 128 else 0)
    fill = _fill_value(stack.mode, options.color)
    planes = []
    for plane in stack.planes:
        out = plane.copy()
        out.paste(fill, (0, 0, stack.width, stack.height), binary)
        planes.append(out)
    logger.debug("Added %s scale bar (%d px) to %s", label or "unlabelled", length, stack.title)
    return stack.with_planes(planes, title=f"{stack.title}-scalebar")


def add_time_bar(stack: Hyperstack, options: Optional[TimeBarOptions] = None) -> Hyperstack:
    """Copy of ``stack`` with a progress bar and elapsed-time label on each frame."""
    options = options or TimeBarOptions()
    if stack.frames < 2:
        raise ValueError("A time bar needs an image with more than one frame.")

    font = ImageFont.load_default()
    fill = _fill_value(stack.mode, options.color)
    interval = stack.calibration.frame_interval
    per_frame = stack.channels * stack.slices
    masks = []
    for t in range(stack.frames):
        mask = Image.new("L", stack.size, 0)
        draw = ImageDraw.Draw(mask)
        bar_w = time_bar_width(stack.width, t, stack.frames)
        draw.rectangle((0, stack.height - options.height_px, bar_w - 1, stack.height - 1), fill=255)
        if options.label and interval > 0:
            draw.text((MARGIN_PX, MARGIN_PX), f"{t * interval:g} {options.unit}", fill=255, font=font)
        masks.append(mask.point(lambda v: 255 if v >= 128 else 0))

    planes = []
    for idx, plane in enumerate(stack.planes):
        out = plane.copy()
        out.paste(fill, (0, 0, stack.width, stack.height), masks[idx // per_frame])
        planes.append(out)
    return stack.with_planes(planes, title=f"{stack.title}-timebar")


def time_bar_width(width: int, t: int, frames: int) -> int:
    return max(int(round(width * (t + 1) / frames)), 1)


def scale_stack(stack: Hyperstack, factor: float) -> Hyperstack:
    if factor <= 0:
        raise ValueError("Scale factor must be positive.")
    new_size = (max(int(round(stack.width * factor)), 1), max(int(round(stack.height * factor)), 1))
    planes = []
    for plane in stack.planes:
        if plane.mode == "I;16":
            planes.append(plane.convert("I").resize(new_size, resample=Image.BICUBIC).convert("I;16"))
        else:
            planes.append(plane.resize(new_size, resample=Image.BICUBIC))
    scaled = stack.with_planes(planes, title=f"{stack.title}-scaled")
    scaled.calibration.pixel_width = stack.calibration.pixel_width / factor
    scaled.calibration.pixel_height = stack.calibration.pixel_height / factor
    return scaled


def movie_fps(stack: Hyperstack, default: float = 7.0) -> float:
    cal = stack.calibration
    if cal.fps > 0:
        return cal.fps
    if cal.frame_interval > 0:
        return 1.0 / cal.frame_interval
    return default


def movie_frames(stack: Hyperstack) -> List[Image.Image]:
    return [render_rgb(stack, t=t) for t in range(stack.frames)]


def scale_and_export(
    stack: Hyperstack,
    path: str,
    factor: float = 3,
    fps: Optional[float] = None,
    default_fps: float = 7.0,
) -> int:
    """Scale a copy of ``stack`` and write it as an MJPG AVI. Returns the frame count."""
    cv2, np = _load_video_backend()
    scaled = scale_stack(stack, factor)
    rate = fps if fps is not None else movie_fps(stack, default_fps)
    frames = movie_frames(scaled)

    fourcc = cv2.VideoWriter_fourcc(*"MJPG")
    writer = cv2.VideoWriter(str(path), fourcc, float(rate), scaled.size)
    if not writer.isOpened():
        raise OSError(f"Could not open a video writer for {path}")
    try:
        for frame in frames:
            writer.write(cv2.cvtColor(np.asarray(frame), cv2.COLOR_RGB2BGR))
    finally:
        writer.release()
    logger.info("Exported %d frame(s) at %.3g fps to %s", len(frames), rate, path)
    return len(frames)


def _load_video_backend():
    try:
        import cv2  # type: ignore
        import numpy as np  # type: ignore
    except ImportError as exc:
        raise OptionalFeatureError(VIDEO_GUIDANCE) from exc
    return cv2, np


def _fill_value(mode: str, color: str):
    rgb = ImageColor.getrgb(color)[:3]
    if mode == "RGB":
        return rgb
    gray = int(round(0.299 * rgb[0] + 0.587 * rgb[1] + 0.114 * rgb[2]))
    if mode == "I;16":
        return gray * 257
    return gray


def _text_width(draw: ImageDraw.ImageDraw, text: str, font) -> int:
    left, _, right, _ = draw.textbbox((0, 0), text, font=font)
    return right - left


def _text_height(draw: ImageDraw.ImageDraw, text: str, font) -> int:
    _, top, _, bottom = draw.textbbox((0, 0), text, font=font)
    return bottom - top
