import sys

import pytest
from PIL import Image

from channel_montage.core import Calibration, Hyperstack
from channel_montage.export import (
    OptionalFeatureError,
    ScaleBarOptions,
    TimeBarOptions,
    add_scale_bar,
    add_time_bar,
    movie_fps,
    scale_and_export,
    scale_bar_length,
    scale_stack,
    time_bar_width,
)


def _stack(size=(100, 60), mode="L", value=0, frames=1, **kwargs):
    planes = [Image.new(mode, size, value) for _ in range(frames)]
    return Hyperstack(planes=planes, frames=frames, title="figure", **kwargs)


def test_scale_bar_length_uses_pixel_size():
    stack = _stack(calibration=Calibration(pixel_width=0.5, pixel_height=0.5, unit="micron"))
    assert scale_bar_length(stack, 10) == 20


def test_scale_bar_lower_right():
    stack = _stack()

    out = add_scale_bar(stack, ScaleBarOptions(width_units=10))

    plane = out.planes[0]
    assert plane.getpixel((85, 47)) == 255
    assert plane.getpixel((75, 47)) == 0
    assert plane.getpixel((85, 55)) == 0
    assert stack.planes[0].getpixel((85, 47)) == 0
    assert out.title == "figure-scalebar"


def test_scale_bar_upper_left_without_label():
    out = add_scale_bar(_stack(), ScaleBarOptions(width_units=10, location="upper left", label=False))
    plane = out.planes[0]
    assert plane.getpixel((12, 11)) == 255
    assert plane.getpixel((85, 47)) == 0


def test_scale_bar_rgb_fill():
    out = add_scale_bar(_stack(mode="RGB"), ScaleBarOptions(width_units=10, label=False))
    assert out.planes[0].getpixel((85, 47)) == (255, 255, 255)


def test_scale_bar_16bit_fill():
    out = add_scale_bar(_stack(mode="I;16"), ScaleBarOptions(width_units=10, label=False))
    assert out.planes[0].getpixel((85, 47)) == 65535


@pytest.mark.parametrize(
    "options",
    [
        ScaleBarOptions(width_units=0),
        ScaleBarOptions(width_units=-5),
        ScaleBarOptions(width_units=200),
        ScaleBarOptions(width_units=10, location="middle"),
    ],
)
def test_scale_bar_rejects_bad_options(options):
    with pytest.raises(ValueError):
        add_scale_bar(_stack(), options)


def test_time_bar_grows_with_frame():
    stack = _stack(size=(90, 20), frames=3)

    out = add_time_bar(stack, TimeBarOptions(label=False))

    widths = []
    for plane in out.planes:
        row = [plane.getpixel((x, 19)) for x in range(90)]
        widths.append(sum(1 for v in row if v == 255))
    assert widths == [30, 60, 90]
    assert out.planes[0].getpixel((5, 5)) == 0
    assert out.title == "figure-timebar"


def test_time_bar_width_minimum():
    assert time_bar_width(10, 0, 100) == 1
    assert time_bar_width(90, 2, 3) == 90


def test_time_bar_needs_frames():
    with pytest.raises(ValueError):
        add_time_bar(_stack())


def test_scale_stack_resizes_and_recalibrates():
    stack = _stack(size=(10, 8), calibration=Calibration(pixel_width=0.3, pixel_height=0.6, unit="micron"))

    out = scale_stack(stack, 3)

    assert out.size == (30, 24)
    assert out.calibration.pixel_width == pytest.approx(0.1)
    assert out.calibration.pixel_height == pytest.approx(0.2)
    assert out.calibration.unit == "micron"
    assert stack.calibration.pixel_width == 0.3


def test_scale_stack_keeps_16bit():
    out = scale_stack(_stack(size=(4, 4), mode="I;16", value=1200), 2)
    assert out.mode == "I;16"
    assert out.planes[0].getpixel((3, 3)) == 1200


def test_scale_stack_rejects_bad_factor():
    with pytest.raises(ValueError):
        scale_stack(_stack(), 0)


def test_movie_fps_priority():
    assert movie_fps(_stack(calibration=Calibration(frame_interval=0.5, fps=3.0))) == 3.0
    assert movie_fps(_stack(calibration=Calibration(frame_interval=0.5))) == 2.0
    assert movie_fps(_stack(), default=7.0) == 7.0


def test_export_without_opencv(monkeypatch, tmp_path):
    monkeypatch.setitem(sys.modules, "cv2", None)
    with pytest.raises(OptionalFeatureError) as excinfo:
        scale_and_export(_stack(frames=2), str(tmp_path / "movie.avi"))
    assert "opencv-python" in str(excinfo.value)


def test_export_writes_avi(tmp_path):
    pytest.importorskip("cv2")
    pytest.importorskip("numpy")
    path = tmp_path / "movie.avi"

    count = scale_and_export(_stack(size=(16, 16), value=120, frames=3), str(path), factor=2)

    assert count == 3
    assert path.exists()
    assert path.stat().st_size > 0
