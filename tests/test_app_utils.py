import pytest
from PIL import Image

pytest.importorskip("tkinter")

from channel_montage.app import (  # noqa: E402
    bit_depth_range,
    calibration_from_fields,
    compute_fit_scale,
    describe_stack,
    parse_drop_files,
    parse_positive_float,
    selections_from_labels,
)
from channel_montage.core import Calibration, Hyperstack  # noqa: E402
from channel_montage.workflow import SelectionKind  # noqa: E402


def test_parse_drop_files_braced():
    data = "{/tmp/my file.tif} /tmp/other.tif"
    paths = parse_drop_files(data)
    assert paths[0] == "/tmp/my file.tif"
    assert paths[1] == "/tmp/other.tif"


def test_parse_drop_files_uri():
    assert parse_drop_files("file:///tmp/cells%20a.tif") == ["/tmp/cells a.tif"]


def test_parse_drop_files_empty():
    assert parse_drop_files("") == []


def test_compute_fit_scale():
    assert compute_fit_scale((100, 100), (200, 200)) == 1.0
    assert compute_fit_scale((400, 200), (200, 200)) == 0.5
    assert compute_fit_scale((0, 10), (200, 200)) == 1.0


def test_selections_from_labels():
    selections = selections_from_labels(["Ch2", "Merge", "None"])
    assert [s.kind for s in selections] == [SelectionKind.CHANNEL, SelectionKind.MERGE, SelectionKind.NONE]
    assert selections[0].channel == 1


def test_parse_positive_float():
    assert parse_positive_float(" 2.5 ", "Width") == 2.5
    with pytest.raises(ValueError, match="Width must be a number."):
        parse_positive_float("abc", "Width")
    with pytest.raises(ValueError, match="Width must be positive."):
        parse_positive_float("0", "Width")


def test_calibration_from_fields():
    calibration = calibration_from_fields(
        {"pixel_width": "0.2", "pixel_height": "0.4", "unit": "micron", "frame_interval": "3", "fps": ""}
    )
    assert calibration == Calibration(0.2, 0.4, "micron", 3.0, 0.0)

    assert calibration_from_fields({}).unit == "pixel"
    with pytest.raises(ValueError):
        calibration_from_fields({"frame_interval": "-1"})


def test_describe_stack():
    planes = [Image.new("L", (8, 6)) for _ in range(3)]
    stack = Hyperstack(planes=planes, frames=3, title="cells", calibration=Calibration(0.5, 0.5, "micron"))
    stack.set_frame(1)
    assert describe_stack(stack) == "8x6 px, 8-bit, 1c x 1z x 3t, 0.5 micron/px | frame 2/3"
    stack.close()
    assert describe_stack(stack) == "cells (closed)"


def test_bit_depth_range():
    assert bit_depth_range(Hyperstack(planes=[Image.new("I;16", (2, 2))])) == (0.0, 65535.0)
    assert bit_depth_range(Hyperstack(planes=[Image.new("RGB", (2, 2))])) == (0.0, 255.0)
