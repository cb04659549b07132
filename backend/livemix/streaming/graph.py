"""FFmpeg filter graph construction for the live mix.

``build_graph`` is a pure function: the same config and secondary handle
always produce an equal ``GraphSpec``, which renders to the same argument
vector. Live parameter changes build a new GraphSpec and restart the engine;
a GraphSpec is never edited in place.
"""
from dataclasses import dataclass

from livemix.config import settings
from livemix.schemas.pipeline import MixConfig
from livemix.services.audio_source import AudioSourceHandle

PRIMARY_INPUT_OPTIONS = ("-thread_queue_size", "512", "-re", "-fflags", "+genpts")
SECONDARY_INPUT_OPTIONS = ("-re", "-thread_queue_size", "1024")
LOOPED_INPUT_OPTIONS = ("-re", "-stream_loop", "-1", "-thread_queue_size", "1024", "-fflags", "+igndts")

# amix: keep going until the longer input ends, fade out a dropped input over 2s
MERGE_FILTER = "amix=inputs=2:duration=longest:dropout_transition=2"

OUTPUT_SAMPLE_RATE = 48000


@dataclass(frozen=True)
class GraphInput:
    index: int
    locator: str
    options: tuple[str, ...] = ()
    loop: bool = False

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.locator]


@dataclass(frozen=True)
class FilterStage:
    """One filter chain: ``[in...]f1,f2[out]``."""
    inputs: tuple[str, ...]
    filters: tuple[str, ...]
    output: str

    def render(self) -> str:
        pads = "".join(f"[{pad}]" for pad in self.inputs)
        return f"{pads}{','.join(self.filters)}[{self.output}]"


@dataclass(frozen=True)
class GraphSpec:
    inputs: tuple[GraphInput, ...]
    stages: tuple[FilterStage, ...]
    video_map: str
    audio_map: str
    video_codec: tuple[str, ...]
    audio_codec: tuple[str, ...]
    output_url: str
    output_format: tuple[str, ...] = ("-f", "flv", "-flvflags", "no_duration_filesize")

    @property
    def reencodes_video(self) -> bool:
        return "copy" not in self.video_codec

    @property
    def has_merge(self) -> bool:
        return any(f.startswith("amix=") for stage in self.stages for f in stage.filters)

    @property
    def filter_complex(self) -> str:
        return ";".join(stage.render() for stage in self.stages)

    def stage_for(self, output: str) -> FilterStage | None:
        for stage in self.stages:
            if stage.output == output:
                return stage
        return None

    def to_args(self, ffmpeg_path: str | None = None) -> list[str]:
        """Render the full FFmpeg command line."""
        args = [ffmpeg_path or settings.FFMPEG_PATH, "-hide_banner", "-loglevel", "info", "-nostdin"]
        for graph_input in self.inputs:
            args += graph_input.to_args()
        args += ["-filter_complex", self.filter_complex]
        args += ["-map", self.video_map, "-map", self.audio_map]
        args += [*self.video_codec, *self.audio_codec, *self.output_format]
        args.append(self.output_url)
        return args


def _gain(volume: int) -> str:
    return f"volume={volume / 100}"


def _delay(delay_ms: int) -> str:
    # Same delay on both channels of the stereo stream
    return f"adelay={delay_ms}|{delay_ms}"


def _audio_chain(input_pad: str, volume: int, delay_ms: int, output: str) -> FilterStage:
    filters = [_gain(volume)]
    if delay_ms > 0:
        filters.append(_delay(delay_ms))
    return FilterStage(inputs=(input_pad,), filters=tuple(filters), output=output)


def build_graph(
    config: MixConfig,
    secondary: AudioSourceHandle | None = None,
    audio_bitrate: str | None = None,
) -> GraphSpec:
    """Build the engine graph for ``config``; ``secondary`` is the acquired handle or None."""
    has_secondary = secondary is not None and bool(secondary.locator)

    inputs = [GraphInput(index=0, locator=config.input_url, options=PRIMARY_INPUT_OPTIONS)]
    if has_secondary:
        inputs.append(GraphInput(
            index=1,
            locator=secondary.locator,
            options=LOOPED_INPUT_OPTIONS if secondary.loop else SECONDARY_INPUT_OPTIONS,
            loop=secondary.loop,
        ))

    stages: list[FilterStage] = []

    # Shifting video timestamps rules out stream copy
    shift_video = config.primary_delay_ms > 0
    if shift_video:
        seconds = config.primary_delay_ms / 1000
        stages.append(FilterStage(inputs=("0:v",), filters=(f"setpts=PTS+{seconds}/TB",), output="v0"))
        video_map = "[v0]"
        video_codec = ("-c:v", "libx264", "-preset", "ultrafast", "-b:v", config.video_bitrate)
    else:
        video_map = "0:v"
        video_codec = ("-c:v", "copy")

    if has_secondary:
        stages.append(_audio_chain("0:a", config.primary_volume, config.primary_delay_ms, "a0"))
        stages.append(_audio_chain("1:a", config.secondary_volume, config.secondary_delay_ms, "a1"))
        stages.append(FilterStage(inputs=("a0", "a1"), filters=(MERGE_FILTER,), output="aout"))
    else:
        stages.append(_audio_chain("0:a", config.primary_volume, config.primary_delay_ms, "aout"))

    audio_codec = (
        "-c:a", "aac",
        "-b:a", audio_bitrate or settings.AUDIO_BITRATE,
        "-ar", str(OUTPUT_SAMPLE_RATE),
        "-ac", "2",
    )

    return GraphSpec(
        inputs=tuple(inputs),
        stages=tuple(stages),
        video_map=video_map,
        audio_map="[aout]",
        video_codec=video_codec,
        audio_codec=audio_codec,
        output_url=config.output_url,
    )
