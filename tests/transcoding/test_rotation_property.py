"""Property-based tests for rotation detection and normalization."""

import pytest
from hypothesis import given, settings, strategies as st

from pitchstream.modules.transcoding.probe import (
    VALID_ROTATIONS,
    MediaMetadata,
    ProbeError,
    normalize_rotation,
    parse_probe_output,
    resolve_rotation,
)

angle_strategy = st.one_of(
    st.integers(min_value=-10_000, max_value=10_000),
    st.floats(allow_nan=True, allow_infinity=True),
)


class TestNormalizeRotation:
    """Rotation always snaps to a quarter turn."""

    @given(angle=angle_strategy)
    @settings(max_examples=100)
    def test_result_is_a_quarter_turn(self, angle) -> None:
        """For any input, the normalized rotation SHALL be one of 0, 90, 180, 270."""
        assert normalize_rotation(angle) in VALID_ROTATIONS

    @given(angle=angle_strategy)
    @settings(max_examples=100)
    def test_normalization_is_idempotent(self, angle) -> None:
        once = normalize_rotation(angle)
        assert normalize_rotation(once) == once

    @given(turns=st.integers(min_value=-20, max_value=20), quarter=st.sampled_from(VALID_ROTATIONS))
    @settings(max_examples=100)
    def test_full_turns_are_ignored(self, turns: int, quarter: int) -> None:
        assert normalize_rotation(quarter + 360 * turns) == quarter

    @pytest.mark.parametrize(
        "angle, expected",
        [(44, 0), (46, 90), (-90, 270), (-180, 180), ("270", 270), ("junk", 0), (None, 0)],
    )
    def test_snaps_to_nearest(self, angle, expected) -> None:
        assert normalize_rotation(angle) == expected


class TestResolveRotation:
    def test_rotate_tag_wins(self) -> None:
        stream = {
            "tags": {"rotate": "90"},
            "side_data_list": [{"side_data_type": "Display Matrix", "rotation": 90}],
        }
        assert resolve_rotation(stream) == 90

    def test_display_matrix_is_counter_clockwise(self) -> None:
        stream = {"side_data_list": [{"side_data_type": "Display Matrix", "rotation": -90}]}
        assert resolve_rotation(stream) == 90

    def test_no_rotation_metadata(self) -> None:
        assert resolve_rotation({"codec_type": "video"}) == 0

    def test_other_side_data_is_ignored(self) -> None:
        stream = {
            "side_data_list": [
                {"side_data_type": "Spherical Mapping", "rotation": 90},
                {"side_data_type": "Display Matrix", "rotation": 90},
            ],
        }
        assert resolve_rotation(stream) == 270

    def test_matrix_dump_is_parsed(self) -> None:
        stream = {
            "side_data_list": [{
                "side_data_type": "Display Matrix",
                "displaymatrix": "\n00000000:            0       65536           0\n"
                                 "00000001:       -65536           0           0\n"
                                 "rotation of -90.00 degrees",
            }],
        }
        assert resolve_rotation(stream) == 90

    def test_matrix_dump_with_parenthesized_angle(self) -> None:
        stream = {
            "side_data_list": [{"side_data_type": "Display Matrix", "displaymatrix": "Rotation (-180)"}],
        }
        assert resolve_rotation(stream) == 180


class TestParseProbeOutput:
    def test_extracts_fields(self) -> None:
        data = {
            "format": {"format_name": "mov,mp4,m4a,3gp,3g2,mj2", "duration": "45.120000"},
            "streams": [
                {"codec_type": "audio", "codec_name": "aac"},
                {
                    "codec_type": "video",
                    "codec_name": "h264",
                    "width": 1920,
                    "height": 1080,
                    "side_data_list": [{"rotation": -90}],
                },
            ],
        }

        metadata = parse_probe_output(data)

        assert metadata == MediaMetadata(
            duration_seconds=45.12,
            container_format="mov,mp4,m4a,3gp,3g2,mj2",
            video_codec="h264",
            rotation_degrees=90,
            width=1920,
            height=1080,
        )
        assert metadata.display_width == 1080
        assert metadata.display_height == 1920

    def test_falls_back_to_stream_duration(self) -> None:
        data = {"format": {}, "streams": [{"codec_type": "video", "duration": "12.5"}]}
        assert parse_probe_output(data).duration_seconds == 12.5

    def test_missing_video_stream_is_an_error(self) -> None:
        with pytest.raises(ProbeError):
            parse_probe_output({"streams": [{"codec_type": "audio"}]})
