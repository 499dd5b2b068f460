from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from PIL import Image, ImageChops, ImageOps, TiffImagePlugin

logger = logging.getLogger(__name__)

Color = Tuple[int, int, int]
DisplayRange = Tuple[float, float]

GRAYS: Color = (255, 255, 255)
# Default colour order of a freshly merged composite.
COMPOSITE_COLORS: List[Color] = [
    (255, 0, 0),
    (0, 255, 0),
    (0, 0, 255),
    (255, 255, 255),
    (0, 255, 255),
    (255, 0, 255),
    (255, 255, 0),
]
BIT_DEPTHS = {"L": 8, "I;16": 16, "RGB": 24}
MAX_VALUES = {"L": 255, "I;16": 65535}

TAG_DESCRIPTION = 270
TAG_X_RESOLUTION = 282
TAG_Y_RESOLUTION = 283
TAG_RESOLUTION_UNIT = 296
IMAGEJ_VERSION = "1.54f"


@dataclass
class Calibration:
    pixel_width: float = 1.0
    pixel_height: float = 1.0
    unit: str = "pixel"
    frame_interval: float = 0.0
    fps: float = 0.0

    def copy(self) -> "Calibration":
        return replace(self)

    @property
    def scaled(self) -> bool:
        return self.unit not in ("", "pixel", "pixels")


@dataclass(eq=False)
class Hyperstack:
    """A stack of 2-D planes with channel, Z and time extents.

    Planes are stored channel-fastest, then Z, then T. Every plane shares
    one Pillow mode: "L" (8-bit), "I;16" (16-bit) or "RGB" (24-bit).
    """

    planes: List[Image.Image]
    channels: int = 1
    slices: int = 1
    frames: int = 1
    title: str = "Untitled"
    calibration: Calibration = field(default_factory=Calibration)
    display_range: Optional[DisplayRange] = None
    lut: Color = GRAYS
    channel: int = 0
    z: int = 0
    t: int = 0
    visible: bool = False
    changes: bool = False
    closed: bool = False

    def __post_init__(self) -> None:
        if not self.planes:
            raise ValueError("A stack needs at least one plane.")
        if min(self.channels, self.slices, self.frames) < 1:
            raise ValueError("Stack dimensions must be positive.")
        expected = self.channels * self.slices * self.frames
        if len(self.planes) != expected:
            raise ValueError(
                f"Expected {expected} planes for {self.channels}c x {self.slices}z x {self.frames}t, "
                f"got {len(self.planes)}."
            )
        modes = {plane.mode for plane in self.planes}
        if len(modes) != 1 or next(iter(modes)) not in BIT_DEPTHS:
            raise ValueError(f"Unsupported plane modes: {sorted(modes)}")
        _ensure_same_size(self.planes)

    @property
    def width(self) -> int:
        return self.planes[0].size[0]

    @property
    def height(self) -> int:
        return self.planes[0].size[1]

    @property
    def size(self) -> tuple[int, int]:
        return self.planes[0].size

    @property
    def mode(self) -> str:
        return self.planes[0].mode

    @property
    def bit_depth(self) -> int:
        return BIT_DEPTHS[self.mode]

    def index(self, c: int, z: int, t: int) -> int:
        return c + z * self.channels + t * self.channels * self.slices

    def plane(self, c: int, z: int, t: int) -> Image.Image:
        self._ensure_open()
        return self.planes[self.index(c, z, t)]

    def frame_plane(self, t: int) -> Image.Image:
        """Plane of the current channel and Z at frame ``t``, clamped to the last frame."""
        return self.plane(self.channel, self.z, min(max(t, 0), self.frames - 1))

    @property
    def current_plane(self) -> Image.Image:
        return self.plane(self.channel, self.z, self.t)

    def set_frame(self, t: int) -> None:
        self.t = min(max(t, 0), self.frames - 1)

    def set_slice(self, z: int) -> None:
        self.z = min(max(z, 0), self.slices - 1)

    def set_channel(self, c: int) -> None:
        self.channel = min(max(c, 0), self.channels - 1)

    def with_planes(self, planes: List[Image.Image], **overrides) -> "Hyperstack":
        """New stack with this stack's metadata and the given planes."""
        values = dict(
            planes=planes,
            calibration=self.calibration.copy(),
            visible=False,
            changes=False,
            closed=False,
        )
        values.update(overrides)
        return replace(self, **values)

    def duplicate(self, title: Optional[str] = None) -> "Hyperstack":
        self._ensure_open()
        return self.with_planes([plane.copy() for plane in self.planes], title=title or f"{self.title}-1")

    def substack(self, z: int, t: Optional[int] = None, title: Optional[str] = None) -> "Hyperstack":
        """Copy every channel at slice ``z``; one frame ``t`` or every frame when ``t`` is None."""
        self._ensure_open()
        frames = range(self.frames) if t is None else [t]
        planes = [self.plane(c, z, f).copy() for f in frames for c in range(self.channels)]
        return self.with_planes(
            planes,
            slices=1,
            frames=len(frames),
            title=title or f"{self.title}-1",
            channel=0,
            z=0,
            t=0,
        )

    def close(self) -> None:
        self.changes = False
        self.visible = False
        self.closed = True
        self.planes = []

    def _ensure_open(self) -> None:
        if self.closed:
            raise ValueError(f"Image '{self.title}' has been closed.")


def copy_calibration(source: Hyperstack, target: Hyperstack, temporal: bool = False) -> None:
    cal = source.calibration
    target_cal = target.calibration
    target_cal.pixel_width = cal.pixel_width
    target_cal.pixel_height = cal.pixel_height
    target_cal.unit = cal.unit
    if temporal:
        target_cal.frame_interval = cal.frame_interval
        target_cal.fps = cal.fps


def stack_extrema(stack: Hyperstack) -> DisplayRange:
    lows, highs = [], []
    for plane in stack.planes:
        low, high = plane.convert("I").getextrema() if plane.mode == "I;16" else plane.getextrema()
        lows.append(low)
        highs.append(high)
    return (float(min(lows)), float(max(highs)))


def effective_display_range(stack: Hyperstack) -> Optional[DisplayRange]:
    if stack.display_range is not None:
        return stack.display_range
    if stack.mode == "L":
        return (0.0, 255.0)
    if stack.mode == "I;16":
        return stack_extrema(stack)
    return None


def split_channels(stack: Hyperstack) -> List[Hyperstack]:
    """One single-channel stack per channel; a 24-bit image splits into R, G and B."""
    if stack.mode == "RGB" and stack.channels == 1:
        bands = [plane.split() for plane in stack.planes]
        return [
            stack.with_planes(
                [plane_bands[idx] for plane_bands in bands],
                title=f"C{idx + 1}-{stack.title}",
                display_range=None,
                lut=GRAYS,
            )
            for idx in range(3)
        ]
    pieces = []
    for c in range(stack.channels):
        planes = [stack.plane(c, z, t).copy() for t in range(stack.frames) for z in range(stack.slices)]
        pieces.append(
            stack.with_planes(planes, channels=1, channel=0, title=f"C{c + 1}-{stack.title}")
        )
    return pieces


def to_8bit(stack: Hyperstack) -> Hyperstack:
    if stack.mode == "L":
        planes = [plane.copy() for plane in stack.planes]
    elif stack.mode == "RGB":
        planes = [plane.convert("L") for plane in stack.planes]
    else:
        low, high = effective_display_range(stack)
        planes = [_scale_to_8bit(plane, low, high) for plane in stack.planes]
    return stack.with_planes(planes, display_range=None, lut=GRAYS)


def to_16bit(stack: Hyperstack) -> Hyperstack:
    """Promote to 16-bit without rescaling sample values."""
    if stack.mode == "I;16":
        return stack.with_planes([plane.copy() for plane in stack.planes])
    if stack.mode == "RGB":
        planes = [plane.convert("L").convert("I").convert("I;16") for plane in stack.planes]
        display_range = (0.0, 255.0)
    else:
        planes = [plane.convert("I").convert("I;16") for plane in stack.planes]
        display_range = stack.display_range or (0.0, 255.0)
    return stack.with_planes(planes, display_range=display_range)


def invert_stack(stack: Hyperstack) -> Hyperstack:
    """Invert every plane of the stack in one pass (``value -> max - value``)."""
    if stack.mode == "I;16":
        top = MAX_VALUES["I;16"]
        planes = [
            plane.convert("I").point(lambda v: v * -1 + top).convert("I;16") for plane in stack.planes
        ]
    else:
        planes = [ImageOps.invert(plane) for plane in stack.planes]
    return stack.with_planes(planes)


def to_display_gray(
    image: Image.Image,
    display_range: Optional[DisplayRange] = None,
) -> Image.Image:
    if image.mode == "RGB":
        return image.convert("L")
    if display_range is None:
        if image.mode == "L":
            return image.copy()
        low, high = image.convert("I").getextrema()
        display_range = (float(low), float(high))
    min_val, max_val = display_range
    return _scale_to_8bit(image, min_val, max_val)


def tint_channel(
    gray_image: Image.Image,
    color: Color,
    display_range: Optional[DisplayRange] = None,
) -> Image.Image:
    gray = to_display_gray(gray_image, display_range=display_range)
    if color == GRAYS:
        return Image.merge("RGB", (gray, gray, gray))
    return ImageOps.colorize(gray, black=(0, 0, 0), white=color)


def to_rgb_plane(
    image: Image.Image,
    display_range: Optional[DisplayRange] = None,
    lut: Color = GRAYS,
) -> Image.Image:
    if image.mode == "RGB":
        return image.copy()
    return tint_channel(image, lut, display_range=display_range)


def convert_plane(
    image: Image.Image,
    mode: str,
    display_range: Optional[DisplayRange] = None,
    lut: Color = GRAYS,
) -> Image.Image:
    """Convert one plane to ``mode`` the way a montage canvas of that mode expects."""
    if image.mode == mode:
        return image
    if mode == "RGB":
        return to_rgb_plane(image, display_range, lut)
    if mode == "L":
        return to_display_gray(image, display_range)
    if mode == "I;16":
        if image.mode == "RGB":
            image = image.convert("L")
        return image.convert("I").convert("I;16")
    raise ValueError(f"Unsupported target mode: {mode}")


def merge_channels(stacks: Sequence[Hyperstack], title: str = "Composite") -> Hyperstack:
    """Combine single-channel stacks into one packed RGB stack.

    Each input is tinted with the composite colour of its merge position and
    the contributions are summed with clipping.
    """
    if not stacks:
        raise ValueError("No channels to merge.")
    _ensure_same_size(stack.planes[0] for stack in stacks)
    frames = max(stack.frames for stack in stacks)
    ranges = [effective_display_range(stack) for stack in stacks]

    planes = []
    for t in range(frames):
        composite = Image.new("RGB", stacks[0].size)
        for position, stack in enumerate(stacks):
            color = COMPOSITE_COLORS[position % len(COMPOSITE_COLORS)]
            tinted = to_rgb_plane(stack.frame_plane(t), ranges[position], color)
            composite = ImageChops.add(composite, tinted)
        planes.append(composite)
    return Hyperstack(planes=planes, frames=frames, title=title)


def render_rgb(stack: Hyperstack, t: Optional[int] = None, z: Optional[int] = None) -> Image.Image:
    """Displayable RGB rendering of one frame; multi-channel stacks render as a composite."""
    t = stack.t if t is None else t
    z = stack.z if z is None else z
    if stack.channels == 1:
        return to_rgb_plane(stack.plane(0, z, t), effective_display_range(stack), stack.lut)
    composite = Image.new("RGB", stack.size)
    display_range = stack.display_range
    for c in range(stack.channels):
        color = COMPOSITE_COLORS[c % len(COMPOSITE_COLORS)]
        plane = stack.plane(c, z, t)
        if display_range is None and plane.mode == "L":
            channel_range: Optional[DisplayRange] = (0.0, 255.0)
        else:
            channel_range = display_range
        composite = ImageChops.add(composite, to_rgb_plane(plane, channel_range, color))
    return composite


def load_hyperstack(paths: Sequence[str]) -> Hyperstack:
    if not paths:
        raise ValueError("No input paths provided.")

    if len(paths) > 1:
        planes: List[Image.Image] = []
        calibration = Calibration()
        for idx, path in enumerate(paths):
            with Image.open(path) as image:
                if getattr(image, "n_frames", 1) > 1:
                    raise ValueError(f"Expected single-page images when combining files: {path}")
                if idx == 0:
                    calibration = _calibration_from_tags(image, _read_description(image))
                planes.append(_normalize_mode(image))
        _ensure_same_size(planes)
        planes = _common_mode(planes)
        return Hyperstack(planes=planes, channels=len(planes), title=Path(paths[0]).stem, calibration=calibration)

    path = paths[0]
    with Image.open(path) as image:
        description = _read_description(image)
        calibration = _calibration_from_tags(image, description)
        n_pages = getattr(image, "n_frames", 1)
        pages = []
        for idx in range(n_pages):
            image.seek(idx)
            pages.append(_normalize_mode(image))
    _ensure_same_size(pages)
    pages = _common_mode(pages)

    if description:
        channels = int(description.get("channels", 1))
        slices = int(description.get("slices", 1))
        frames = int(description.get("frames", 1))
        if channels * slices * frames == 1 and n_pages > 1:
            slices = n_pages
        if channels * slices * frames != n_pages:
            raise ValueError(
                f"Page count {n_pages} does not match {channels}c x {slices}z x {frames}t in {path}"
            )
    else:
        channels, slices, frames = n_pages, 1, 1

    logger.debug("Loaded %s as %dc x %dz x %dt (%s)", path, channels, slices, frames, pages[0].mode)
    return Hyperstack(
        planes=pages,
        channels=channels,
        slices=slices,
        frames=frames,
        title=Path(path).name,
        calibration=calibration,
    )


def save_hyperstack(stack: Hyperstack, path: str) -> None:
    if stack.closed:
        raise ValueError("Cannot save a closed image.")

    info = TiffImagePlugin.ImageFileDirectory_v2()
    info[TAG_DESCRIPTION] = _format_description(stack)
    cal = stack.calibration
    if cal.scaled and cal.pixel_width > 0 and cal.pixel_height > 0:
        info[TAG_X_RESOLUTION] = 1.0 / cal.pixel_width
        info[TAG_Y_RESOLUTION] = 1.0 / cal.pixel_height
        info[TAG_RESOLUTION_UNIT] = 1

    first = stack.planes[0]
    rest = list(stack.planes[1:])
    first.save(path, format="TIFF", save_all=True, append_images=rest, tiffinfo=info)
    stack.changes = False


def _format_description(stack: Hyperstack) -> str:
    cal = stack.calibration
    lines = [f"ImageJ={IMAGEJ_VERSION}", f"images={len(stack.planes)}"]
    if stack.channels > 1:
        lines.append(f"channels={stack.channels}")
    if stack.slices > 1:
        lines.append(f"slices={stack.slices}")
    if stack.frames > 1:
        lines.append(f"frames={stack.frames}")
    if sum(dim > 1 for dim in (stack.channels, stack.slices, stack.frames)) > 1:
        lines.append("hyperstack=true")
    if cal.scaled:
        lines.append(f"unit={cal.unit}")
    if cal.frame_interval > 0:
        lines.append(f"finterval={cal.frame_interval!r}")
    if cal.fps > 0:
        lines.append(f"fps={cal.fps!r}")
    lines.append("loop=false")
    return "\n".join(lines) + "\n"


def _read_description(image: Image.Image) -> Dict[str, str]:
    tag_v2 = getattr(image, "tag_v2", None)
    if not tag_v2:
        return {}
    text = tag_v2.get(TAG_DESCRIPTION)
    if not text or not str(text).startswith("ImageJ="):
        return {}
    values = {}
    for line in str(text).splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def _calibration_from_tags(image: Image.Image, description: Dict[str, str]) -> Calibration:
    calibration = Calibration()
    if description.get("finterval"):
        calibration.frame_interval = float(description["finterval"])
    if description.get("fps"):
        calibration.fps = float(description["fps"])

    tag_v2 = getattr(image, "tag_v2", None)
    if not tag_v2:
        return calibration
    unit = description.get("unit")
    if unit is None:
        unit = {2: "inch", 3: "cm"}.get(tag_v2.get(TAG_RESOLUTION_UNIT))
    x_res = tag_v2.get(TAG_X_RESOLUTION)
    if unit and x_res:
        y_res = tag_v2.get(TAG_Y_RESOLUTION) or x_res
        if float(x_res) > 0 and float(y_res) > 0:
            calibration.pixel_width = 1.0 / float(x_res)
            calibration.pixel_height = 1.0 / float(y_res)
            calibration.unit = unit
    return calibration


def _normalize_mode(image: Image.Image) -> Image.Image:
    mode = image.mode
    if mode in BIT_DEPTHS:
        return image.copy()
    if mode in ("1", "LA"):
        return image.convert("L")
    if mode in ("P", "PA", "RGBA", "RGBX", "CMYK", "YCbCr", "LAB", "HSV"):
        return image.convert("RGB")
    if mode.startswith("I") or mode == "F":
        return image.convert("I").convert("I;16")
    raise ValueError(f"Unsupported image mode: {mode}")


def _common_mode(planes: List[Image.Image]) -> List[Image.Image]:
    modes = {plane.mode for plane in planes}
    if len(modes) == 1:
        return planes
    target = "RGB" if "RGB" in modes else "I;16"
    return [convert_plane(plane, target) for plane in planes]


def _ensure_same_size(planes: Iterable[Image.Image]) -> None:
    sizes = {im.size for im in planes}
    if len(sizes) != 1:
        raise ValueError("All channels must have the same dimensions.")


def _scale_to_8bit(image: Image.Image, min_val: float, max_val: float) -> Image.Image:
    if max_val <= min_val:
        max_val = min_val + 1
    scale = 256.0 / (max_val - min_val + 1)
    offset = -min_val * scale
    return image.convert("I").point(lambda v: v * scale + offset).convert("L")
