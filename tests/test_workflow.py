import logging

import pytest
from PIL import Image

from channel_montage import workflow
from channel_montage.core import Calibration, Hyperstack
from channel_montage.workflow import (
    ChannelSet,
    ImageScope,
    MontageError,
    NoImageError,
    Selection,
    SelectionKind,
    Session,
    WorkflowSettings,
    align_selected,
    alignment_labels,
    channel_for_alignment,
    create_merge,
    extract_channels,
)


def _calibration():
    return Calibration(pixel_width=0.25, pixel_height=0.5, unit="micron", frame_interval=1.5, fps=2.0)


def _source(channels=2, frames=1, size=(8, 6)):
    planes = []
    for t in range(frames):
        for c in range(channels):
            planes.append(Image.new("L", size, 10 * (c + 1) + t))
    return Hyperstack(
        planes=planes,
        channels=channels,
        frames=frames,
        title="cells.tif",
        calibration=_calibration(),
    )


def _session(source, use_frames=False, flags=(False, False, False, False)):
    session = Session()
    session.open_image(source)
    session.use_frames = use_frames
    session.merge_flags = list(flags)
    return session


def test_selection_from_label():
    assert Selection.from_label("None").kind is SelectionKind.NONE
    assert Selection.from_label("Merge").kind is SelectionKind.MERGE
    selection = Selection.from_label("Ch3")
    assert selection.kind is SelectionKind.CHANNEL
    assert selection.channel == 2
    assert selection.label == "Ch3"


@pytest.mark.parametrize("label", ["Ch0", "Channel 1", "merge", ""])
def test_selection_from_label_rejects_unknown(label):
    with pytest.raises(ValueError):
        Selection.from_label(label)


def test_alignment_labels():
    assert alignment_labels(WorkflowSettings()) == ["None", "Ch1", "Ch2", "Ch3", "Ch4", "Merge"]


def test_image_scope_closes_on_error():
    stack = _source()
    with pytest.raises(RuntimeError):
        with ImageScope() as scope:
            scope.own(stack)
            raise RuntimeError("boom")
    assert stack.closed


def test_image_scope_release_keeps_result():
    kept = _source()
    dropped = _source()
    with ImageScope() as scope:
        scope.own(kept)
        scope.own(dropped)
        scope.release(kept)
    assert not kept.closed
    assert dropped.closed


def test_extract_without_image():
    with pytest.raises(NoImageError):
        extract_channels(Session())


def test_extract_two_channels():
    source = _source()
    session = _session(source)

    channel_set = extract_channels(session)

    assert channel_set is session.channel_set
    assert channel_set.populated() == [0, 1]
    assert channel_set.display[2] is None and channel_set.display[3] is None
    assert channel_set.full_stack == [None, None, None, None]
    first = channel_set.display[0]
    assert first.mode == "L"
    assert first.visible
    assert first.planes[0].getpixel((0, 0)) == 255 - 10
    assert channel_set.display[1].planes[0].getpixel((0, 0)) == 255 - 20
    shown = session.shown_images()
    assert len(shown) == 3
    assert source in shown


def test_extract_ignores_channels_beyond_four():
    session = _session(_source(channels=6))
    channel_set = extract_channels(session)
    assert channel_set.populated() == [0, 1, 2, 3]
    assert len(session.shown_images()) == 5


def test_extract_current_frame_only():
    source = _source(frames=3)
    source.set_frame(1)
    session = _session(source, use_frames=False)

    channel_set = extract_channels(session)

    assert channel_set.display[0].frames == 1
    assert channel_set.display[0].planes[0].getpixel((0, 0)) == 255 - 11
    assert source.t == 1


def test_extract_full_time_range():
    session = _session(_source(frames=3), use_frames=True)

    channel_set = extract_channels(session)

    first = channel_set.display[0]
    assert first.frames == 3
    assert channel_set.full_stack[0] is first
    assert [plane.getpixel((0, 0)) for plane in first.planes] == [245, 244, 243]


def test_merge_without_source_returns_none():
    assert create_merge(Session()) is None


def test_merge_zero_channels_returns_nothing():
    session = _session(_source())
    shown_before = session.shown_images()

    assert create_merge(session) is None
    assert session.shown_images() == shown_before


def test_merge_zero_channels_releases_time_stack(monkeypatch):
    closed = []
    original_close = Hyperstack.close

    def tracking_close(self):
        closed.append(self)
        original_close(self)

    monkeypatch.setattr(Hyperstack, "close", tracking_close)
    session = _session(_source(frames=3), use_frames=True)

    assert create_merge(session) is None
    # duplicate, two splits and two 16-bit promotions
    assert len(closed) == 5
    assert session.original is not None and not session.original.closed


def test_merge_selected_channels():
    source = _source()
    session = _session(source, flags=(True, True, False, False))

    merged = create_merge(session)

    assert merged.mode == "RGB"
    assert merged.size == source.size
    assert merged.visible
    assert merged in session.shown_images()
    assert merged.planes[0].getpixel((0, 0)) == (10, 20, 0)
    cal = merged.calibration
    assert (cal.pixel_width, cal.pixel_height, cal.unit) == (0.25, 0.5, "micron")
    assert cal.frame_interval == 0.0


def test_merge_full_time_range_copies_temporal_calibration():
    source = _source(frames=3)
    source.set_frame(2)
    session = _session(source, use_frames=True, flags=(False, True, False, False))

    merged = create_merge(session)

    assert merged.frames == 3
    assert merged.t == 0
    assert merged.calibration == source.calibration
    assert [plane.getpixel((0, 0)) for plane in merged.planes] == [(20, 0, 0), (21, 0, 0), (22, 0, 0)]


def test_merge_hidden():
    session = _session(_source(), flags=(True, False, False, False))
    merged = create_merge(session, show=False)
    assert merged is not None
    assert not merged.visible
    assert merged not in session.shown_images()


def test_merge_missing_channel_returns_none():
    session = _session(_source(), flags=(False, False, False, True))
    assert create_merge(session) is None


def test_merge_failure_is_logged(monkeypatch, caplog):
    def broken(*args, **kwargs):
        raise RuntimeError("merge exploded")

    monkeypatch.setattr(workflow, "merge_channels", broken)
    session = _session(_source(), flags=(True, True, False, False))

    with caplog.at_level(logging.ERROR, logger="channel_montage.workflow"):
        assert create_merge(session) is None
    assert "Failed to create merged image" in caplog.text
    assert len(session.shown_images()) == 1


def test_channel_for_alignment_missing_entry():
    session = _session(_source())
    assert channel_for_alignment(session, 0) is None
    extract_channels(session)
    assert channel_for_alignment(session, 2) is None
    assert channel_for_alignment(session, 7) is None


def test_channel_for_alignment_hidden_16bit():
    source = _source()
    session = _session(source)
    extract_channels(session)

    image = channel_for_alignment(session, 1)

    assert image.bit_depth == 16
    assert not image.visible
    assert image not in session.shown_images()
    assert image.planes[0].getpixel((0, 0)) == 255 - 20
    cal = image.calibration
    assert (cal.pixel_width, cal.pixel_height, cal.unit) == (0.25, 0.5, "micron")


def test_channel_for_alignment_full_time_range():
    source = _source(frames=3)
    session = _session(source, use_frames=True)
    extract_channels(session)

    image = channel_for_alignment(session, 0)

    assert image.frames == 3
    assert image.calibration == source.calibration


def test_align_requires_two_images():
    session = _session(_source())
    extract_channels(session)
    shown_before = len(session.shown_images())

    with pytest.raises(MontageError):
        align_selected(session, [Selection.of_channel(0), Selection.none(), Selection.of_channel(3)])
    assert len(session.shown_images()) == shown_before
    assert session.montage is None


def test_end_to_end_two_channel_figure():
    source = _source(size=(512, 512))
    session = _session(source)

    channel_set = extract_channels(session)
    assert [entry.size for entry in channel_set.display[:2]] == [(512, 512), (512, 512)]
    assert channel_set.display[2:] == [None, None]

    session.merge_flags = [True, True, False, False]
    merged = create_merge(session)
    assert merged.bit_depth == 24
    assert merged.size == (512, 512)
    assert merged.visible

    selections = [Selection.from_label(label) for label in ("Ch1", "Merge", "None", "None", "None")]
    montage = align_selected(session, selections)

    assert montage.size == (1024, 512)
    assert montage.bit_depth == 24
    assert montage.visible
    assert session.montage is montage
    assert montage.planes[0].getpixel((5, 5)) == (245, 245, 245)
    assert montage.planes[0].getpixel((600, 5)) == (10, 20, 0)
    assert montage.calibration.pixel_width == 0.25


def test_close_generated_keeps_original():
    source = _source()
    session = _session(source, flags=(True, True, False, False))
    channel_set = extract_channels(session)
    merged = create_merge(session)

    closed = session.close_generated()

    assert closed == 3
    assert session.shown_images() == [source]
    assert merged.closed
    assert channel_set.display[0].closed
    assert session.channel_set.populated() == []


def test_close_generated_without_original():
    with pytest.raises(NoImageError):
        Session().close_generated()


def test_session_callbacks():
    shown, closed = [], []
    session = Session()
    session.on_show = shown.append
    session.on_close = closed.append
    source = _source()

    session.open_image(source)
    session.close(source)

    assert shown == [source]
    assert closed == [source]
    assert session.original is None


def test_channel_set_get_skips_closed():
    channel_set = ChannelSet.empty()
    entry = _source(channels=1)
    channel_set.display[0] = entry
    assert channel_set.get(0) is entry
    entry.close()
    assert channel_set.get(0) is None
