from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from PIL import Image

from .core import (
    GRAYS,
    Hyperstack,
    convert_plane,
    copy_calibration,
    effective_display_range,
    invert_stack,
    merge_channels,
    split_channels,
    to_16bit,
    to_8bit,
)

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Problem caused by the current selection or state, reported to the user."""


class NoImageError(WorkflowError):
    pass


class MontageError(WorkflowError, ValueError):
    pass


@dataclass
class WorkflowSettings:
    max_channels: int = 4
    alignment_slots: int = 5
    export_scale: int = 3
    default_movie_fps: float = 7.0


class SelectionKind(enum.Enum):
    NONE = "none"
    CHANNEL = "channel"
    MERGE = "merge"


@dataclass(frozen=True)
class Selection:
    kind: SelectionKind = SelectionKind.NONE
    channel: int = 0

    @classmethod
    def none(cls) -> "Selection":
        return cls(SelectionKind.NONE)

    @classmethod
    def merge(cls) -> "Selection":
        return cls(SelectionKind.MERGE)

    @classmethod
    def of_channel(cls, index: int) -> "Selection":
        if index < 0:
            raise ValueError(f"Channel index must be non-negative: {index}")
        return cls(SelectionKind.CHANNEL, index)

    @classmethod
    def from_label(cls, label: str) -> "Selection":
        text = label.strip()
        if text == "None":
            return cls.none()
        if text == "Merge":
            return cls.merge()
        match = re.fullmatch(r"Ch(\d+)", text)
        if match and int(match.group(1)) >= 1:
            return cls.of_channel(int(match.group(1)) - 1)
        raise ValueError(f"Unknown selection: {label!r}")

    @property
    def label(self) -> str:
        if self.kind is SelectionKind.MERGE:
            return "Merge"
        if self.kind is SelectionKind.CHANNEL:
            return f"Ch{self.channel + 1}"
        return "None"


def alignment_labels(settings: WorkflowSettings) -> List[str]:
    return ["None"] + [f"Ch{idx + 1}" for idx in range(settings.max_channels)] + ["Merge"]


@dataclass
class ChannelSet:
    display: List[Optional[Hyperstack]]
    full_stack: List[Optional[Hyperstack]]

    @classmethod
    def empty(cls, size: int = 4) -> "ChannelSet":
        return cls(display=[None] * size, full_stack=[None] * size)

    def get(self, index: int) -> Optional[Hyperstack]:
        if index < 0 or index >= len(self.display):
            return None
        entry = self.display[index]
        if entry is None or entry.closed:
            return None
        return entry

    def populated(self) -> List[int]:
        return [idx for idx in range(len(self.display)) if self.get(idx) is not None]


class Session:
    """Workflow state owned by the controller and passed to every operation."""

    def __init__(self, settings: Optional[WorkflowSettings] = None) -> None:
        self.settings = settings or WorkflowSettings()
        self.original: Optional[Hyperstack] = None
        self.channel_set = ChannelSet.empty(self.settings.max_channels)
        self.use_frames = False
        self.merge_flags: List[bool] = [False] * self.settings.max_channels
        self.merge_count = 1
        self.montage: Optional[Hyperstack] = None
        self.on_show: Optional[Callable[[Hyperstack], None]] = None
        self.on_close: Optional[Callable[[Hyperstack], None]] = None
        self._images: List[Hyperstack] = []

    def open_image(self, stack: Hyperstack) -> None:
        self.original = stack
        self.channel_set = ChannelSet.empty(self.settings.max_channels)
        self.montage = None
        self.show(stack)

    def show(self, stack: Hyperstack) -> None:
        stack.visible = True
        if not any(image is stack for image in self._images):
            self._images.append(stack)
        if self.on_show is not None:
            self.on_show(stack)

    def hide(self, stack: Hyperstack) -> None:
        stack.visible = False

    def close(self, stack: Hyperstack) -> None:
        registered = any(image is stack for image in self._images)
        self._images = [image for image in self._images if image is not stack]
        stack.close()
        if registered and self.on_close is not None:
            self.on_close(stack)
        if stack is self.original:
            self.original = None

    def shown_images(self) -> List[Hyperstack]:
        return [image for image in self._images if image.visible and not image.closed]

    def close_generated(self) -> int:
        """Close every registered image except the original; returns how many were closed."""
        original = self.original
        if original is None or original.closed:
            raise NoImageError("Original image not found!")
        generated = [image for image in self._images if image is not original]
        for image in generated:
            self.close(image)
        self.channel_set = ChannelSet.empty(self.settings.max_channels)
        self.montage = None
        self.show(original)
        logger.info("Closed %d generated image(s)", len(generated))
        return len(generated)


class ImageScope:
    """Owns intermediate images and closes them when the block exits."""

    def __init__(self, session: Optional[Session] = None) -> None:
        self.session = session
        self._owned: List[Hyperstack] = []

    def __enter__(self) -> "ImageScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        owned, self._owned = self._owned, []
        for stack in reversed(owned):
            stack.changes = False
            if self.session is not None:
                self.session.close(stack)
            else:
                stack.close()
        return False

    def own(self, stack: Hyperstack) -> Hyperstack:
        self._owned.append(stack)
        return stack

    def own_all(self, stacks: Sequence[Hyperstack]) -> List[Hyperstack]:
        return [self.own(stack) for stack in stacks]

    def release(self, stack: Hyperstack) -> Hyperstack:
        self._owned = [owned for owned in self._owned if owned is not stack]
        return stack


def _multi_frame(session: Session, stack: Hyperstack) -> bool:
    return session.use_frames and stack.frames > 1


def extract_channels(session: Session, source: Optional[Hyperstack] = None) -> ChannelSet:
    """Duplicate the current view of ``source``, split it and invert each channel as 8-bit."""
    source = source if source is not None else session.original
    if source is None or source.closed:
        raise NoImageError("No image is open!")
    session.original = source

    multi = _multi_frame(session, source)
    limit = session.settings.max_channels
    channel_set = ChannelSet.empty(limit)
    with ImageScope(session) as scope:
        selection = scope.own(
            source.substack(z=source.z, t=None if multi else source.t, title=f"{source.title}-dup")
        )
        pieces = scope.own_all(split_channels(selection))
        if len(pieces) > limit:
            logger.info("Ignoring %d channel(s) beyond channel %d", len(pieces) - limit, limit)
        for index, piece in enumerate(pieces[:limit]):
            channel = invert_stack(to_8bit(piece))
            channel.lut = GRAYS
            channel.title = f"C{index + 1}-{source.title}"
            session.show(channel)
            channel_set.display[index] = channel
            channel_set.full_stack[index] = channel if multi else None
            logger.debug("Extracted %s (%d frame(s))", channel.title, channel.frames)

    session.channel_set = channel_set
    session.show(source)
    return channel_set


def create_merge(session: Session, show: bool = True) -> Optional[Hyperstack]:
    """Merge the channels ticked in ``session.merge_flags`` into an RGB composite."""
    source = session.original
    if source is None or source.closed:
        logger.warning("Merge requested without an open image")
        return None

    flags = list(session.merge_flags)
    multi = _multi_frame(session, source)
    temp_title = f"TempForMerge_{session.merge_count}"
    session.merge_count += 1

    with ImageScope(session) as scope:
        try:
            duplicate = scope.own(source.substack(z=source.z, t=None if multi else source.t, title=temp_title))
            splits = scope.own_all(split_channels(duplicate))
            promoted = scope.own_all([to_16bit(piece) for piece in splits])
            chosen = [idx for idx, flag in enumerate(flags) if flag and idx < len(promoted)]
            if not chosen:
                logger.info("No valid channels selected for merging")
                return None

            labels = "_".join(f"C{idx + 1}" for idx in chosen)
            merged = merge_channels([promoted[idx] for idx in chosen], title=f"Merged_{labels}_{source.title}")
            copy_calibration(source, merged, temporal=multi)
            merged.set_frame(0)
        except Exception:
            logger.exception("Failed to create merged image from %s", source.title)
            return None

    if show:
        session.show(merged)
    else:
        session.hide(merged)
    logger.debug("Created %s (%d frame(s))", merged.title, merged.frames)
    return merged


def channel_for_alignment(session: Session, index: int) -> Optional[Hyperstack]:
    """Hidden 16-bit copy of an extracted channel, used only as montage input."""
    entry = session.channel_set.get(index)
    source = session.original
    if entry is None or source is None or source.closed:
        return None

    if _multi_frame(session, entry):
        duplicate = entry.duplicate(title=f"16bit_{entry.title}")
    else:
        duplicate = entry.substack(z=entry.z, t=entry.t, title=f"16bit_{entry.title}")
    if duplicate.bit_depth != 16:
        promoted = to_16bit(duplicate)
        duplicate.close()
        duplicate = promoted

    copy_calibration(source, duplicate, temporal=duplicate.frames > 1)
    session.hide(duplicate)
    return duplicate


def assemble_montage(images: Sequence[Hyperstack], title: str = "Stacked") -> Hyperstack:
    """Place ``images`` side by side, left to right, one output frame per input frame.

    Inputs with fewer frames repeat their last frame. The output is RGB when
    any input is RGB, otherwise it uses the first input's bit depth.
    """
    if len(images) < 2:
        raise MontageError("Need at least 2 images to create a horizontal stack.")

    has_time_frames = any(image.frames > 1 for image in images)
    frames = max(image.frames for image in images) if has_time_frames else 1
    width = sum(image.width for image in images)
    height = max(image.height for image in images)
    mode = "RGB" if any(image.bit_depth == 24 for image in images) else images[0].mode
    ranges = [effective_display_range(image) for image in images]

    planes = []
    for t in range(frames):
        canvas = Image.new(mode, (width, height))
        x_offset = 0
        for image, display_range in zip(images, ranges):
            block = image.frame_plane(t) if has_time_frames else image.current_plane
            canvas.paste(convert_plane(block, mode, display_range, image.lut), (x_offset, 0))
            x_offset += image.width
        planes.append(canvas)

    montage = Hyperstack(planes=planes, frames=frames, title=title)
    if mode == "I;16":
        montage.display_range = images[0].display_range
    copy_calibration(images[0], montage, temporal=has_time_frames)
    logger.debug("Assembled %dx%d montage from %d image(s), %d frame(s)", width, height, len(images), frames)
    return montage


def align_selected(session: Session, selections: Sequence[Selection]) -> Hyperstack:
    """Gather an image per selection and show them side by side as one montage."""
    with ImageScope(session) as scope:
        gathered: List[Hyperstack] = []
        for selection in selections:
            if selection.kind is SelectionKind.MERGE:
                image = create_merge(session, show=False)
            elif selection.kind is SelectionKind.CHANNEL:
                image = channel_for_alignment(session, selection.channel)
            else:
                continue
            if image is None:
                logger.debug("No image available for selection %s", selection.label)
                continue
            gathered.append(scope.own(image))

        if len(gathered) < 2:
            raise MontageError("Need at least 2 images to create a horizontal stack.")
        labels = [selection.label for selection in selections if selection.kind is not SelectionKind.NONE]
        title = "Aligned_" + "_".join(labels)
        montage = assemble_montage(gathered, title=title)

    session.montage = montage
    session.show(montage)
    return montage
