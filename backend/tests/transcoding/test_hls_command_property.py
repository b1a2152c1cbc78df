"""Property-based tests for the ffmpeg command and the master manifest.

**Property: A ladder of N entries yields one ffmpeg invocation with N
variant outputs, and a master manifest with N STREAM-INF lines in ladder
order.**
"""

import os

import pytest
from hypothesis import given, settings, strategies as st

from vodflow.modules.transcoding.engine import build_master_manifest
from vodflow.modules.transcoding.ffmpeg import (
    CodecResult,
    FFmpegRunner,
    classify_failure,
    parse_probe_output,
)
from vodflow.modules.transcoding.ladder import LadderEntry

ladder_strategy = st.lists(
    st.tuples(
        st.integers(min_value=16, max_value=4096),
        st.integers(min_value=16, max_value=2160),
        st.integers(min_value=100, max_value=20_000),
    ),
    min_size=1,
    max_size=6,
    unique_by=lambda e: (e[0], e[1]),
).map(lambda entries: [LadderEntry(w, h, f"{b}k") for w, h, b in entries])


def make_runner(**overrides) -> FFmpegRunner:
    options = dict(
        ffmpeg_path="ffmpeg",
        ffprobe_path="ffprobe",
        preset="veryfast",
        threads=0,
        segment_seconds=10,
        audio_bitrate="128k",
    )
    options.update(overrides)
    return FFmpegRunner(**options)


class TestBuildHlsCommand:
    @given(ladder=ladder_strategy)
    @settings(max_examples=100)
    def test_one_output_per_ladder_entry(self, ladder) -> None:
        cmd = make_runner().build_hls_command("/in/source.mp4", "/out", ladder, "vid")

        assert cmd[0] == "ffmpeg"
        assert cmd.count("-i") == 1
        assert cmd.count("-map") == 2 * len(ladder)
        playlists = [arg for arg in cmd if arg.endswith(".m3u8")]
        assert playlists == [os.path.join("/out", f"vid_v{i}.m3u8") for i in range(len(ladder))]

    @given(ladder=ladder_strategy)
    @settings(max_examples=50)
    def test_variant_options_follow_ladder(self, ladder) -> None:
        cmd = make_runner().build_hls_command("/in/source.mp4", "/out", ladder, "vid")

        sizes = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-s"]
        bitrates = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-b:v"]
        assert sizes == [e.resolution for e in ladder]
        assert bitrates == [e.bitrate for e in ladder]

    def test_packaging_options(self) -> None:
        ladder = [LadderEntry(1920, 1080, "5000k")]
        cmd = make_runner().build_hls_command("/in/movie.mp4", "/out", ladder, "vid")

        def value_of(flag: str) -> str:
            return cmd[cmd.index(flag) + 1]

        assert value_of("-c:v") == "libx264"
        assert value_of("-preset") == "veryfast"
        assert value_of("-c:a") == "aac"
        assert value_of("-b:a") == "128k"
        assert value_of("-hls_time") == "10"
        assert value_of("-hls_list_size") == "0"
        assert value_of("-hls_playlist_type") == "vod"
        assert value_of("-hls_segment_filename") == os.path.join("/out", "vid_v0_%03d.ts")
        assert "0:v:0" in cmd and "0:a:0" in cmd
        assert "-threads" not in cmd

    def test_threads_passed_when_configured(self) -> None:
        ladder = [LadderEntry(1280, 720, "2500k"), LadderEntry(854, 480, "1000k")]
        cmd = make_runner(threads=4).build_hls_command("/in/movie.mp4", "/out", ladder, "vid")
        assert cmd.count("-threads") == 2


class TestMasterManifest:
    @given(ladder=ladder_strategy)
    @settings(max_examples=100)
    def test_stream_inf_lines_in_ladder_order(self, ladder) -> None:
        manifest = build_master_manifest(ladder, "vid")
        lines = manifest.splitlines()

        assert lines[0] == "#EXTM3U"
        assert lines[1] == "#EXT-X-VERSION:3"
        stream_infs = [l for l in lines if l.startswith("#EXT-X-STREAM-INF:")]
        assert len(stream_infs) == len(ladder)
        for index, (line, entry) in enumerate(zip(stream_infs, ladder)):
            assert line == f"#EXT-X-STREAM-INF:BANDWIDTH={entry.bandwidth},RESOLUTION={entry.resolution}"
            assert lines[lines.index(line) + 1] == f"vid_v{index}.m3u8"

    def test_scenario_two_rung_ladder(self) -> None:
        ladder = [LadderEntry(1920, 1080, "5000k"), LadderEntry(1280, 720, "2500k")]
        assert build_master_manifest(ladder, "abc") == (
            "#EXTM3U\n"
            "#EXT-X-VERSION:3\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=5000000,RESOLUTION=1920x1080\n"
            "abc_v0.m3u8\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=2500000,RESOLUTION=1280x720\n"
            "abc_v1.m3u8\n"
        )


class TestFailureClassification:
    @pytest.mark.parametrize(
        "stderr",
        [
            "Stream map '0:a:0' matches no streams.",
            "movie.mp4: Invalid data found when processing input",
            "Unknown encoder 'libx264'",
        ],
    )
    def test_permanent_diagnostics(self, stderr: str) -> None:
        error = classify_failure(CodecResult(exit_status=1, stdout="", stderr=stderr))
        assert error.permanent
        assert stderr.strip() in str(error)

    def test_generic_failure_is_transient(self) -> None:
        error = classify_failure(CodecResult(exit_status=1, stdout="", stderr="Conversion failed!"))
        assert not error.permanent

    def test_kill_by_signal_is_transient(self) -> None:
        error = classify_failure(CodecResult(exit_status=-9, stdout="", stderr="Invalid data found when processing input"))
        assert not error.permanent
        assert "signal 9" in str(error)

    def test_stderr_tail_is_truncated(self) -> None:
        result = CodecResult(exit_status=1, stdout="", stderr="x" * 10_000 + "END")
        assert result.stderr_tail(100).endswith("END")
        assert len(result.stderr_tail(100)) == 100


class TestProbeParsing:
    def test_video_and_audio_streams(self) -> None:
        info = parse_probe_output({
            "streams": [
                {"codec_type": "video", "width": 1920, "height": 1080},
                {"codec_type": "audio"},
            ],
            "format": {"duration": "42.5", "format_name": "mov,mp4,m4a,3gp,3g2,mj2"},
        })
        assert info.has_video and info.has_audio
        assert (info.width, info.height) == (1920, 1080)
        assert info.duration == 42.5

    def test_missing_audio(self) -> None:
        info = parse_probe_output({"streams": [{"codec_type": "video"}], "format": {}})
        assert info.has_video
        assert not info.has_audio
        assert info.duration == 0.0
