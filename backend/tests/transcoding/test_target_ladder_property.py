"""Property-based tests for rendition ladder selection."""

import pytest
from hypothesis import given, settings, strategies as st

from vodforge.core.errors import ValidationError
from vodforge.modules.transcoding.abr import compute_scale, round_to_even, select_targets
from vodforge.modules.transcoding.models import TARGET_BITRATES, TARGET_SHORT_EDGE, Target
from vodforge.modules.video.models import Orientation

dimension = st.integers(min_value=2, max_value=8000)


def labels(width: int, height: int) -> list[str]:
    return [variant.label for variant in select_targets(width, height)[1]]


class TestLadderExamples:
    """Known sources produce known ladders."""

    def test_full_hd_landscape(self) -> None:
        orientation, variants = select_targets(1920, 1080)
        assert orientation == Orientation.LANDSCAPE
        assert [(v.label, v.width, v.height) for v in variants] == [
            ("1080p", 1920, 1080),
            ("720p", 1280, 720),
            ("360p", 640, 360),
        ]

    def test_widescreen_laptop(self) -> None:
        orientation, variants = select_targets(1280, 800)
        assert orientation == Orientation.LANDSCAPE
        assert [(v.label, v.width, v.height) for v in variants] == [
            ("720p", 1152, 720),
            ("360p", 576, 360),
        ]

    def test_small_source_gets_only_360p(self) -> None:
        assert labels(640, 360) == ["360p"]

    def test_portrait_pins_width(self) -> None:
        orientation, variants = select_targets(1080, 1920)
        assert orientation == Orientation.PORTRAIT
        assert [(v.width, v.height) for v in variants] == [(1080, 1920), (720, 1280), (360, 640)]

    def test_square_counts_as_portrait(self) -> None:
        orientation, _ = select_targets(720, 720)
        assert orientation == Orientation.PORTRAIT

    def test_bitrates_and_profiles(self) -> None:
        _, variants = select_targets(1920, 1080)
        assert [(v.bitrate, v.profile, v.level) for v in variants] == [
            (4_800_000, "high", "4.1"),
            (2_800_000, "main", "3.1"),
            (640_000, "baseline", "3.0"),
        ]

    @pytest.mark.parametrize("width,height", [(0, 1080), (1920, 0), (-1, 10), (None, 1080), (1920.0, 1080)])
    def test_missing_dimensions_are_rejected(self, width, height) -> None:
        with pytest.raises(ValidationError):
            select_targets(width, height)


class TestLadderProperties:
    """Invariants over arbitrary source dimensions."""

    @given(width=dimension, height=dimension)
    @settings(max_examples=200)
    def test_dimensions_are_even_and_short_edge_pinned(self, width: int, height: int) -> None:
        _, variants = select_targets(width, height)
        for variant in variants:
            assert variant.width % 2 == 0
            assert variant.height % 2 == 0
            assert min(variant.width, variant.height) == TARGET_SHORT_EDGE[variant.target]

    @given(width=dimension, height=dimension)
    @settings(max_examples=200)
    def test_ladder_rule(self, width: int, height: int) -> None:
        short_edge = min(width, height)
        expected = [
            t.value for t in (Target.RES_1080P, Target.RES_720P, Target.RES_360P)
            if t == Target.RES_360P or short_edge >= TARGET_SHORT_EDGE[t]
        ]
        assert labels(width, height) == expected

    @given(width=dimension, height=dimension)
    @settings(max_examples=100)
    def test_selection_is_deterministic(self, width: int, height: int) -> None:
        assert select_targets(width, height) == select_targets(width, height)

    @given(width=dimension, height=dimension)
    @settings(max_examples=100)
    def test_aspect_ratio_is_preserved(self, width: int, height: int) -> None:
        for variant in select_targets(width, height)[1]:
            # Rounding to even moves the long edge by at most one pixel
            if width > height:
                assert abs(variant.width - width * variant.height / height) <= 1
            else:
                assert abs(variant.height - height * variant.width / width) <= 1

    @given(width=dimension, height=dimension)
    @settings(max_examples=100)
    def test_bitrates_come_from_the_tier(self, width: int, height: int) -> None:
        for variant in select_targets(width, height)[1]:
            assert variant.bitrate == TARGET_BITRATES[variant.target]


class TestRounding:
    @pytest.mark.parametrize("value,expected", [(0.9, 0), (1.0, 2), (2.9, 2), (3.0, 4), (1151.9, 1152)])
    def test_round_to_even(self, value: float, expected: int) -> None:
        assert round_to_even(value) == expected

    def test_compute_scale_landscape(self) -> None:
        assert compute_scale(1920, 1080, 720) == (1280, 720)
