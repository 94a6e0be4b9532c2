import numpy as np
import pytest

from sprocket_frames.film_spec import (
    FILM_FORMATS,
    FilmLayout,
    FilmType,
    SprocketLayout,
    in_pixels,
    interframe_filter,
    is_vertical,
    rank_fits,
    sort_in_transport_order,
    sprocket_layout,
    transport_direction,
)
from sprocket_frames.models import Fit

DPI = 1200
PITCH = in_pixels(FILM_FORMATS[FilmType.SUPER_8].hole_pitch, DPI)


def fit_at(row, col, std_dev=0.5, n_points=100):
    return Fit(
        row=row,
        col=col,
        scale=1.0,
        rotation=0.0,
        edge_points=np.zeros((n_points, 2), dtype=np.int64),
        std_dev=std_dev,
    )


def test_in_pixels():
    assert in_pixels(25.4, 3200) == pytest.approx(3200)
    assert in_pixels(1.0, 1200) < in_pixels(1.0, 2400)


@pytest.mark.parametrize("film_type", list(FilmType))
def test_hole_dimensions_grow_with_resolution(film_type):
    spec = FILM_FORMATS[film_type]
    sizes = [in_pixels(spec.hole_width, dpi) for dpi in (600, 1200, 3200, 4800)]
    assert sizes == sorted(sizes)
    assert spec.edge_to_hole_center == pytest.approx(spec.edge_to_hole + spec.hole_width / 2)


@pytest.mark.parametrize(
    "layout, reverse, expected",
    [
        (FilmLayout.LR, False, SprocketLayout.ALONG_BOTTOM),
        (FilmLayout.RL, False, SprocketLayout.ALONG_TOP),
        (FilmLayout.TB, False, SprocketLayout.ALONG_LEFT),
        (FilmLayout.BT, False, SprocketLayout.ALONG_RIGHT),
        (FilmLayout.LR, True, SprocketLayout.ALONG_TOP),
        (FilmLayout.RL, True, SprocketLayout.ALONG_BOTTOM),
        (FilmLayout.TB, True, SprocketLayout.ALONG_RIGHT),
        (FilmLayout.BT, True, SprocketLayout.ALONG_LEFT),
    ],
)
def test_sprocket_layout(layout, reverse, expected):
    assert sprocket_layout(layout, reverse) == expected


def test_orientation():
    assert is_vertical(FilmLayout.TB) and is_vertical(FilmLayout.BT)
    assert not is_vertical(FilmLayout.LR) and not is_vertical(FilmLayout.RL)
    assert transport_direction(FilmLayout.RL).tolist() == [0.0, -1.0]


@pytest.mark.parametrize(
    "layout, expected",
    [
        (FilmLayout.LR, [100, 200, 300]),
        (FilmLayout.RL, [300, 200, 100]),
        (FilmLayout.TB, [200, 100, 300]),
        (FilmLayout.BT, [300, 100, 200]),
    ],
)
def test_sort_in_transport_order(layout, expected):
    fits = [fit_at(30, 300), fit_at(20, 100), fit_at(10, 200)]
    ordered = sort_in_transport_order(fits, layout)
    assert [f.col for f in ordered] == expected


def test_rank_prefers_tight_well_supported_fits():
    fits = [
        fit_at(0, 0, std_dev=2.0, n_points=50),
        fit_at(0, 1, std_dev=0.1, n_points=200),
        fit_at(0, 2, std_dev=1.0, n_points=100),
    ]
    ranked = rank_fits(fits)
    assert [f.col for f in ranked] == [1, 2, 0]
    assert [f.rank for f in ranked] == [6, 4, 2]


def test_rank_ties_keep_order():
    fits = [fit_at(0, i) for i in range(4)]
    assert [f.col for f in rank_fits(fits)] == [0, 1, 2, 3]


class TestInterframeFilter:
    def run(self, cols, layout=FilmLayout.LR, length=1100):
        fits = [fit_at(350, col) for col in cols]
        return interframe_filter(FilmType.SUPER_8, layout, DPI, length, fits)

    def test_nominal_spacing_keeps_everything(self):
        cols = [150 + i * PITCH for i in range(5)]
        assert len(self.run(cols)) == 5

    def test_anchor_in_the_middle(self):
        cols = [550, 150, 350, 750, 950]
        assert len(self.run(cols)) == 5

    def test_off_pitch_candidate_dropped(self):
        cols = [150, 350, 450, 550]
        verified = self.run(cols)
        assert sorted(f.col for f in verified) == [150, 350, 550]

    def test_gap_is_bridged(self):
        cols = [150, 550, 750]
        assert len(self.run(cols)) == 3

    def test_unconfirmed_anchor(self):
        assert self.run([150, 260]) is None

    def test_single_candidate_confirms_itself(self):
        assert len(self.run([150])) == 1

    def test_empty(self):
        assert self.run([]) is None

    def test_right_to_left(self):
        cols = [950, 750, 550, 350, 150]
        assert len(self.run(cols, layout=FilmLayout.RL)) == 5

    def test_within_tolerance(self):
        cols = [150, 150 + PITCH * 1.08, 150 + PITCH * 2.05]
        assert len(self.run(cols)) == 3
