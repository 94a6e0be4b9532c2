import numpy as np
import pytest

from sprocket_frames.film_edge import FilmEdge
from sprocket_frames.film_spec import in_pixels
from sprocket_frames.frame import Frame, build_frames, cut_frame, frame_references
from sprocket_frames.geometry import PolarLine
from sprocket_frames.models import ExtractionConfig, FilmLayout, Fit

DPI = 1200
SHAPE = (420, 600)


def fit_at(row, col):
    return Fit(row=row, col=col, scale=1.0, rotation=0.0, edge_points=np.zeros((60, 2)), std_dev=0.4)


def strip_edges(sprocket_row=397.0, far_row=20.0, tilt=0.0):
    sprocket = FilmEdge.from_line(
        PolarLine(rho=sprocket_row, theta=np.pi / 2 + tilt), SHAPE, vertical=False
    )
    far = FilmEdge.from_line(PolarLine(rho=far_row, theta=np.pi / 2 + tilt), SHAPE, vertical=False)
    return sprocket, far


class TestCutFrame:
    def test_unrotated_unscaled_crop_is_exact_slice(self):
        img = np.arange(40 * 50, dtype=np.uint16).reshape(40, 50)
        out = cut_frame(img, (10.0, 20.0), (5, 3))
        assert np.array_equal(out, img[9:12, 18:23])

    def test_color_slice(self):
        img = np.random.default_rng(1).integers(0, 255, size=(30, 30, 3), dtype=np.uint8)
        out = cut_frame(img, (15.0, 16.0), (6, 4))
        assert out.shape == (4, 6, 3)
        assert np.array_equal(out, img[13:17, 13:19])

    def test_even_size_crop_is_exact_slice(self):
        img = np.arange(40 * 50).reshape(40, 50).astype(np.uint8)
        out = cut_frame(img, (20.0, 25.0), (6, 4))
        assert np.array_equal(out, img[18:22, 22:28])

    def test_half_pixel_center_is_interpolated(self):
        img = np.tile(np.arange(50, dtype=np.float32), (40, 1))
        out = cut_frame(img, (20.0, 25.5), (4, 2))
        assert out[0] == pytest.approx([23.5, 24.5, 25.5, 26.5])

    def test_quarter_turn(self):
        img = np.arange(40 * 50, dtype=np.uint8).reshape(40, 50)
        out = cut_frame(img, (10.0, 20.0), (5, 3), across=(1.0, 0.0), along=(0.0, 1.0))
        assert out.shape == (3, 5)
        assert np.array_equal(out, img[8:13, 19:22].T)

    def test_outside_image_is_none(self):
        img = np.zeros((40, 50), dtype=np.uint8)
        assert cut_frame(img, (1.0, 20.0), (5, 5)) is None
        assert cut_frame(img, (20.0, 48.0), (5, 5)) is None
        assert cut_frame(img, (20.0, 25.0), (5, 5), scale=20.0) is None

    def test_scale(self):
        img = np.tile(np.arange(50, dtype=np.float32), (40, 1))
        out = cut_frame(img, (20.0, 20.0), (5, 1), scale=2.0)
        assert out[0] == pytest.approx([16.0, 18.0, 20.0, 22.0, 24.0])


class TestFrame:
    def config(self, **changes):
        return ExtractionConfig(resolution_dpi=DPI, film_layout=FilmLayout.LR, **changes)

    def test_geometry_from_edges(self):
        sprocket, far = strip_edges()
        config = self.config()
        frame = Frame.build(0, fit_at(351.3, 300.0), sprocket, far, config, SHAPE)

        measured = (45.7 + 331.3) * 25.4 / 7.975
        assert frame.derived_resolution == pytest.approx(measured, rel=1e-3)
        assert frame.across == pytest.approx([-1.0, 0.0], abs=1e-6)
        assert frame.along == pytest.approx([0.0, 1.0], abs=1e-6)
        expected_row = 397.0 - in_pixels(4.45, frame.derived_resolution)
        assert frame.center == pytest.approx([expected_row, 300.0], abs=1e-3)
        assert frame.scale == pytest.approx(frame.derived_resolution / DPI)
        assert frame.size == config.output_size
        assert not frame.out_of_bounds
        assert frame.rotation == pytest.approx(0.0, abs=1e-6)

    def test_rotation_follows_tilted_edges(self):
        tilt = 0.02
        sprocket, far = strip_edges(tilt=tilt)
        ref = sprocket.line.closest((351.0, 300.0)) - 45.7 * sprocket.line.normal
        frame = Frame.build(0, fit_at(*ref), sprocket, far, self.config(), SHAPE)
        assert abs(frame.rotation) == pytest.approx(tilt, abs=1e-4)

        upright = Frame.build(0, fit_at(*ref), sprocket, far, self.config(correct_rotation=False), SHAPE)
        assert upright.rotation == pytest.approx(0.0, abs=1e-9)

    def test_no_rescale(self):
        sprocket, far = strip_edges(far_row=40.0)
        frame = Frame.build(0, fit_at(351.3, 300.0), sprocket, far, self.config(rescale=False), SHAPE)
        assert frame.scale == 1.0
        assert frame.center[0] == pytest.approx(397.0 - in_pixels(4.45, DPI), abs=1e-3)

    def test_out_of_bounds_frame_is_not_cut(self):
        sprocket, far = strip_edges()
        frame = Frame.build(0, fit_at(351.3, 50.0), sprocket, far, self.config(), SHAPE)
        assert frame.out_of_bounds
        assert frame.cut(np.zeros(SHAPE, dtype=np.uint8)) is None

    def test_cut_content(self):
        sprocket, far = strip_edges()
        config = self.config(rescale=False)
        img = np.zeros(SHAPE, dtype=np.uint8)
        frame = Frame.build(0, fit_at(351.3, 300.0), sprocket, far, config, SHAPE)
        # Mark the picture area nearest the sprocket edge
        center_row = int(round(frame.center[0]))
        img[center_row + 100 : center_row + 130, 290:310] = 255

        out = frame.cut(img)

        width, height = config.output_size
        assert out.shape == (height, width)
        # Output x runs from the sprocket side across the film
        assert out[:, : width // 2].sum() > 0
        assert out[:, width // 2 :].sum() == 0


def test_frame_references():
    fits = [fit_at(351.0, 100.0), fit_at(351.0, 280.0), fit_at(353.0, 460.0)]
    assert frame_references(fits, 1) == fits
    mids = frame_references(fits, 2)
    assert [m.col for m in mids] == [190.0, 370.0]
    assert mids[1].row == 352.0


def test_build_frames_numbers_frames():
    sprocket, far = strip_edges()
    config = ExtractionConfig(resolution_dpi=DPI, film_layout=FilmLayout.LR)
    frames = build_frames([fit_at(351.3, 150.0), fit_at(351.3, 350.0)], sprocket, far, config, SHAPE)
    assert [f.index for f in frames] == [0, 1]
