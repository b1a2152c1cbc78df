"""Property-based tests for ABR ladder parsing and validation.

**Property: Bitrate labels convert to bits per second and invalid ladders
are rejected before any encode starts.**
"""

import pytest
from hypothesis import given, settings, strategies as st

from vodflow.core.config import DEFAULT_LADDER, LadderEntrySetting
from vodflow.modules.transcoding.ladder import (
    InvalidLadderError,
    LadderEntry,
    ladder_from_settings,
    parse_bitrate,
    validate_ladder,
)

dimension = st.integers(min_value=16, max_value=7680)


class TestParseBitrate:
    @given(value=st.integers(min_value=1, max_value=100_000))
    @settings(max_examples=100)
    def test_kilobit_suffix(self, value: int) -> None:
        assert parse_bitrate(f"{value}k") == value * 1000
        assert parse_bitrate(f"{value}K") == value * 1000

    @given(value=st.integers(min_value=1, max_value=1000))
    @settings(max_examples=100)
    def test_megabit_suffix(self, value: int) -> None:
        assert parse_bitrate(f"{value}M") == value * 1_000_000

    @given(value=st.integers(min_value=1, max_value=10**9))
    @settings(max_examples=100)
    def test_plain_bits_per_second(self, value: int) -> None:
        assert parse_bitrate(str(value)) == value

    def test_documented_examples(self) -> None:
        assert parse_bitrate("5000k") == 5_000_000
        assert parse_bitrate("5M") == 5_000_000
        assert parse_bitrate("800000") == 800_000
        assert parse_bitrate("2.5M") == 2_500_000

    @pytest.mark.parametrize("label", ["", "fast", "5000kb", "-5k", "0", "0k", "k"])
    def test_rejects_unparseable_labels(self, label: str) -> None:
        with pytest.raises(InvalidLadderError):
            parse_bitrate(label)


class TestValidateLadder:
    @given(
        entries=st.lists(
            st.tuples(dimension, dimension, st.integers(min_value=100, max_value=50_000)),
            min_size=1,
            max_size=8,
            unique_by=lambda e: (e[0], e[1]),
        )
    )
    @settings(max_examples=100)
    def test_valid_ladder_keeps_order(self, entries) -> None:
        ladder = [LadderEntry(w, h, f"{b}k") for w, h, b in entries]
        assert validate_ladder(ladder) == ladder

    def test_empty_ladder_rejected(self) -> None:
        with pytest.raises(InvalidLadderError):
            validate_ladder([])

    @pytest.mark.parametrize("width,height", [(0, 720), (1280, 0), (-1, 720)])
    def test_non_positive_dimensions_rejected(self, width: int, height: int) -> None:
        with pytest.raises(InvalidLadderError):
            validate_ladder([LadderEntry(width, height, "2500k")])

    def test_duplicate_resolution_rejected(self) -> None:
        with pytest.raises(InvalidLadderError, match="duplicate"):
            validate_ladder([LadderEntry(1280, 720, "2500k"), LadderEntry(1280, 720, "3000k")])

    def test_upscaling_entries_are_allowed(self) -> None:
        ladder = validate_ladder([LadderEntry(3840, 2160, "20M")])
        assert ladder[0].resolution == "3840x2160"
        assert ladder[0].bandwidth == 20_000_000

    def test_ladder_from_settings_uses_default_ladder(self) -> None:
        ladder = ladder_from_settings(DEFAULT_LADDER)
        assert [e.resolution for e in ladder] == ["1920x1080", "1280x720", "854x480"]

    def test_ladder_from_settings_validates(self) -> None:
        with pytest.raises(InvalidLadderError):
            ladder_from_settings([LadderEntrySetting(width=1280, height=720, bitrate="fast")])
