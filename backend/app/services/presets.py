"""ffmpeg argument presets.

ffmpeg always reads the source from stdin (``pipe:0``) and writes the
result to stdout (``pipe:1``).
"""
from dataclasses import dataclass

from app.services.errors import UnsupportedFormatError

INPUT_ARGS = ["-hide_banner", "-y", "-i", "pipe:0"]
OUTPUT_ARGS = ["pipe:1"]


@dataclass(frozen=True)
class VideoPreset:
    container: str
    codec: str
    content_type: str
    extension: str
    encoder_args: tuple[str, ...]

    def build_args(self, height: int) -> list[str]:
        return [
            *INPUT_ARGS,
            "-map", "0:v:0?",
            "-map", "0:a:0?",
            "-pix_fmt", "yuv420p",
            # Width follows the aspect ratio, rounded down to an even number
            "-vf", f"scale='trunc(oh*a/2)*2':{height}",
            "-max_muxing_queue_size", "9999",
            *self.encoder_args,
            *OUTPUT_ARGS,
        ]


@dataclass(frozen=True)
class AudioPreset:
    codec: str
    content_type: str
    extension: str
    encoder: str
    muxer: str
    extra_args: tuple[str, ...] = ()

    def build_args(self, bitrate_kbps: int) -> list[str]:
        return [
            *INPUT_ARGS,
            "-vn",
            "-c:a", self.encoder,
            "-b:a", f"{bitrate_kbps}k",
            *self.extra_args,
            "-f", self.muxer,
            *OUTPUT_ARGS,
        ]


VIDEO_PRESETS: dict[tuple[str, str], VideoPreset] = {
    ("mp4", "h264"): VideoPreset(
        container="mp4",
        codec="h264",
        content_type="video/mp4",
        extension="mp4",
        encoder_args=(
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-profile:v", "high",
            "-level", "4.2",
            "-c:a", "aac",
            "-b:a", "192k",
            # Fragmented MP4 is the only MP4 flavour that can go to a pipe
            "-movflags", "+frag_keyframe+empty_moov",
            "-f", "mp4",
        ),
    ),
    ("webm", "vp9"): VideoPreset(
        container="webm",
        codec="vp9",
        content_type="video/webm",
        extension="webm",
        encoder_args=(
            "-c:v", "libvpx-vp9",
            "-b:v", "0",
            "-crf", "32",
            "-row-mt", "1",
            "-cpu-used", "4",
            "-c:a", "libopus",
            "-b:a", "160k",
            "-f", "webm",
        ),
    ),
    ("webm", "av1"): VideoPreset(
        container="webm",
        codec="av1",
        content_type="video/webm",
        extension="webm",
        encoder_args=(
            "-c:v", "libaom-av1",
            "-b:v", "0",
            "-crf", "30",
            "-cpu-used", "6",
            "-c:a", "libopus",
            "-b:a", "160k",
            "-f", "webm",
        ),
    ),
}

DEFAULT_VIDEO_CODECS = {"mp4": "h264", "webm": "vp9"}

AUDIO_PRESETS: dict[str, AudioPreset] = {
    "mp3": AudioPreset(
        codec="mp3",
        content_type="audio/mpeg",
        extension="mp3",
        encoder="libmp3lame",
        muxer="mp3",
    ),
    "opus": AudioPreset(
        codec="opus",
        content_type="audio/ogg",
        extension="opus",
        encoder="libopus",
        muxer="opus",
    ),
}


def default_video_codec(container: str) -> str:
    """Codec used when the client names a container but no codec."""
    return DEFAULT_VIDEO_CODECS.get(container.lower(), "h264")


def get_video_preset(container: str, codec: str) -> VideoPreset:
    """Look up a video preset.

    Raises:
        UnsupportedFormatError: If no preset exists for the pair
    """
    preset = VIDEO_PRESETS.get((container.lower(), codec.lower()))
    if preset is None:
        raise UnsupportedFormatError(f"Unsupported format/vcodec: {container}/{codec}")
    return preset


def get_audio_preset(codec: str) -> AudioPreset:
    """Look up an audio preset.

    Raises:
        UnsupportedFormatError: If the codec is unknown
    """
    preset = AUDIO_PRESETS.get(codec.lower())
    if preset is None:
        raise UnsupportedFormatError(f"Unsupported audio codec: {codec}")
    return preset
