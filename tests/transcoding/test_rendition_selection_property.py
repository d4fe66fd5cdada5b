"""Property-based tests for ABR rendition selection and sizing."""

import pytest
from hypothesis import given, settings, strategies as st

from pitchstream.modules.transcoding.abr import (
    MAX_SOURCE_HEIGHT,
    RENDITION_CATALOGUE,
    compute_resolution,
    ensure_even,
    plan_renditions,
    profiles_from_names,
    select_renditions,
)

profile_sets = st.lists(
    st.sampled_from(list(RENDITION_CATALOGUE.values())),
    min_size=1,
    max_size=4,
    unique=True,
)
heights = st.one_of(st.none(), st.integers(min_value=0, max_value=4320))
widths = st.one_of(st.none(), st.integers(min_value=1, max_value=7680))


class TestSelectRenditions:
    """Selection never upscales except through the single-profile fallback."""

    @given(profiles=profile_sets, source_height=heights)
    @settings(max_examples=100)
    def test_never_exceeds_source_height(self, profiles, source_height) -> None:
        selected = select_renditions(source_height, profiles)
        lowest = min(profiles, key=lambda p: p.target_height)

        assert selected, "at least one rendition is always selected"
        if any(p.target_height > (source_height or 0) for p in selected):
            assert selected == [lowest]
        else:
            assert all(p.target_height <= source_height for p in selected)

    @given(profiles=profile_sets, source_height=st.integers(min_value=1, max_value=4320))
    @settings(max_examples=100)
    def test_selects_every_qualifying_profile(self, profiles, source_height) -> None:
        qualifying = {p.name for p in profiles if p.target_height <= source_height}
        selected = {p.name for p in select_renditions(source_height, profiles)}

        if qualifying:
            assert selected == qualifying

    def test_unknown_height_uses_lowest(self) -> None:
        profiles = list(RENDITION_CATALOGUE.values())
        assert select_renditions(None, profiles) == [RENDITION_CATALOGUE["360p"]]


class TestPlanRenditions:
    @given(profiles=profile_sets, width=widths, height=st.integers(min_value=2, max_value=4320))
    @settings(max_examples=100)
    def test_planned_sizes_are_even_and_bounded(self, profiles, width, height) -> None:
        for rendition in plan_renditions(width, height, profiles):
            assert rendition.width % 2 == 0
            assert rendition.height % 2 == 0
            assert rendition.height <= min(height, MAX_SOURCE_HEIGHT)
            assert rendition.height <= rendition.profile.target_height

    def test_short_source_renames_fallback(self) -> None:
        planned = plan_renditions(640, 361, [RENDITION_CATALOGUE["480p"]])

        assert len(planned) == 1
        assert planned[0].height == 360
        assert planned[0].name == "360p"
        assert planned[0].profile is RENDITION_CATALOGUE["480p"]

    def test_portrait_source(self) -> None:
        planned = plan_renditions(1080, 1920, [RENDITION_CATALOGUE["480p"]])
        assert (planned[0].width, planned[0].height) == (270, 480)


class TestResolution:
    @given(value=st.floats(min_value=0, max_value=10_000, allow_nan=False))
    @settings(max_examples=100)
    def test_ensure_even(self, value: float) -> None:
        result = ensure_even(value)
        assert result % 2 == 0
        assert result >= 2

    def test_unknown_dimensions_assume_widescreen(self) -> None:
        assert compute_resolution(480, None, None) == (852, 480)

    def test_keeps_source_aspect(self) -> None:
        assert compute_resolution(720, 1920, 1080) == (1280, 720)


class TestCatalogue:
    def test_names_are_sorted_by_height(self) -> None:
        profiles = profiles_from_names(["1080p", "360p", "720p"])
        assert [p.name for p in profiles] == ["360p", "720p", "1080p"]

    def test_unknown_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            profiles_from_names(["4k"])

    def test_bandwidth_includes_audio(self) -> None:
        profile = RENDITION_CATALOGUE["480p"]
        assert profile.bandwidth == 3_184_000
        assert profile.average_bandwidth == 2_664_000
