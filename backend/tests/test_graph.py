"""Tests for FFmpeg filter graph construction."""
import pytest

from livemix.schemas.pipeline import MixConfig, SourceMode
from livemix.services.audio_source import AudioSourceHandle
from livemix.streaming.graph import MERGE_FILTER, build_graph

INPUT = "rtmp://in/live/stream"
OUTPUT = "rtmp://out/live/key"


def _config(**overrides) -> MixConfig:
    return MixConfig(input_url=INPUT, output_url=OUTPUT, **overrides)


def _url_handle(locator="https://radio.example/stream.mp3") -> AudioSourceHandle:
    return AudioSourceHandle(mode=SourceMode.URL, locator=locator, loop=False)


def _placeholder_handle(locator="/tmp/livemix/browser-silence-abc.wav") -> AudioSourceHandle:
    return AudioSourceHandle(mode=SourceMode.BROWSER, locator=locator, loop=True, placeholder=True)


class TestPrimaryOnly:
    def test_disabled_mode_defaults(self):
        spec = build_graph(_config())

        assert len(spec.inputs) == 1
        assert spec.filter_complex == "[0:a]volume=1.0[aout]"
        assert spec.video_map == "0:v"
        assert spec.video_codec == ("-c:v", "copy")
        assert not spec.reencodes_video
        assert not spec.has_merge

    def test_no_handle_means_no_merge_even_if_mode_is_set(self):
        spec = build_graph(_config(source_mode=SourceMode.URL, secondary_volume=50))
        assert len(spec.inputs) == 1
        assert not spec.has_merge
        assert "1:a" not in spec.filter_complex

    def test_handle_without_locator_is_ignored(self):
        handle = AudioSourceHandle(mode=SourceMode.BROWSER, locator=None)
        spec = build_graph(_config(source_mode=SourceMode.BROWSER), handle)
        assert len(spec.inputs) == 1


class TestWithSecondary:
    def test_gain_delay_and_merge(self):
        config = _config(
            source_mode=SourceMode.URL,
            primary_volume=150,
            secondary_volume=50,
            primary_delay_ms=0,
            secondary_delay_ms=200,
        )
        spec = build_graph(config, _url_handle())

        assert spec.stage_for("a0").filters == ("volume=1.5",)
        assert spec.stage_for("a1").filters == ("volume=0.5", "adelay=200|200")
        merge = spec.stage_for("aout")
        assert merge.inputs == ("a0", "a1")
        assert merge.filters == (MERGE_FILTER,)
        assert "duration=longest" in MERGE_FILTER
        assert spec.filter_complex == (
            "[0:a]volume=1.5[a0];"
            "[1:a]volume=0.5,adelay=200|200[a1];"
            "[a0][a1]amix=inputs=2:duration=longest:dropout_transition=2[aout]"
        )

    def test_url_source_is_read_once(self):
        spec = build_graph(_config(source_mode=SourceMode.URL), _url_handle())
        args = spec.to_args("ffmpeg")
        assert "-stream_loop" not in args
        assert not spec.inputs[1].loop

    def test_looped_source_repeats_indefinitely(self):
        spec = build_graph(_config(source_mode=SourceMode.BROWSER), _placeholder_handle())
        secondary = spec.inputs[1]
        assert secondary.loop
        loop_at = secondary.options.index("-stream_loop")
        assert secondary.options[loop_at + 1] == "-1"

        args = spec.to_args("ffmpeg")
        # Input options come before the input they apply to
        assert args.index("-stream_loop") < args.index(secondary.locator)


class TestVideoShift:
    def test_primary_delay_shifts_video_and_reencodes(self):
        spec = build_graph(_config(primary_delay_ms=1500, video_bitrate="4500k"))

        assert spec.stage_for("v0").filters == ("setpts=PTS+1.5/TB",)
        assert spec.video_map == "[v0]"
        assert spec.reencodes_video
        assert spec.video_codec[spec.video_codec.index("-b:v") + 1] == "4500k"
        assert spec.stage_for("aout").filters == ("volume=1.0", "adelay=1500|1500")

    def test_secondary_delay_alone_keeps_stream_copy(self):
        spec = build_graph(_config(source_mode=SourceMode.URL, secondary_delay_ms=800), _url_handle())
        assert spec.video_codec == ("-c:v", "copy")
        assert spec.stage_for("v0") is None


@pytest.mark.parametrize("volume", [0, 1, 37, 100, 150, 199, 200])
def test_gain_factor_is_volume_over_100(volume):
    spec = build_graph(_config(primary_volume=volume))
    gain = spec.stage_for("aout").filters[0]
    assert float(gain.split("=", 1)[1]) == pytest.approx(volume / 100)


@pytest.mark.parametrize("delay_ms", [0, 1, 250, 4999, 5000])
def test_delay_stage_present_iff_positive(delay_ms):
    spec = build_graph(_config(source_mode=SourceMode.URL, secondary_delay_ms=delay_ms), _url_handle())
    filters = spec.stage_for("a1").filters
    if delay_ms > 0:
        assert filters[-1] == f"adelay={delay_ms}|{delay_ms}"
    else:
        assert all(not f.startswith("adelay") for f in filters)


def test_build_is_deterministic():
    config = _config(source_mode=SourceMode.URL, primary_volume=120, secondary_delay_ms=300)
    handle = _url_handle()
    first = build_graph(config, handle)
    second = build_graph(config, handle)
    assert first == second
    assert first.to_args("ffmpeg") == second.to_args("ffmpeg")


def test_command_line_layout():
    spec = build_graph(_config(), audio_bitrate="128k")
    args = spec.to_args("/usr/bin/ffmpeg")

    assert args[0] == "/usr/bin/ffmpeg"
    assert args[-1] == OUTPUT
    assert args[args.index("-i") + 1] == INPUT
    assert args[args.index("-filter_complex") + 1] == spec.filter_complex
    assert args[args.index("-b:a") + 1] == "128k"
    assert args[args.index("-f", args.index("-filter_complex")) + 1] == "flv"
    assert ["-map", "0:v", "-map", "[aout]"] == args[args.index("-map"):args.index("-map") + 4]
