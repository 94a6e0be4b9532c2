import numpy as np
import pytest

from sprocket_frames.contrast import linear_contrast


def ramp(dtype=np.uint8, top=255):
    return np.tile(np.linspace(0, top, 256).round().astype(dtype), (10, 1))


def test_brightest_fraction_saturates():
    out = linear_contrast(ramp(), 0.0, 0.3)
    assert out.dtype == np.uint8
    assert out[0, 0] == 0
    assert (out[:, 180:] == 255).all()
    assert out[0, 89] == pytest.approx(128, abs=1)
    assert (np.diff(out[0].astype(int)) >= 0).all()


def test_sixteen_bit():
    img = ramp(np.uint16, 40000)
    out = linear_contrast(img)
    assert out.dtype == np.uint16
    assert out.max() == 65535


def test_channels_keep_their_ratio():
    img = np.zeros((10, 10, 3), dtype=np.uint8)
    img[:5] = (20, 40, 60)
    img[5:] = (10, 10, 10)
    out = linear_contrast(img, 0.0, 0.1).astype(float)
    assert out[0, 0, 0] / out[0, 0, 2] == pytest.approx(1 / 3, abs=0.02)
    assert out[0, 0].max() == 255


def test_black_frame_is_left_alone():
    img = np.zeros((8, 8), dtype=np.uint8)
    out = linear_contrast(img)
    assert (out == 0).all()
    assert out is not img


def test_rejects_float_frames():
    with pytest.raises(ValueError):
        linear_contrast(np.zeros((4, 4), dtype=np.float32))
