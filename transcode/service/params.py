"""
Encode parameter derivation.

Turns source asset properties plus a VariantSpec into the concrete values the
encoder is run with: frame rate, keyframe interval, output size, bitrates,
audio settings and container flags. Also enforces the output size limits
before any encoder process is spawned.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from transcode.service.constants import (
    AUDIO_ENCODERS,
    DEFAULT_AUDIO_ENCODER,
    DEFAULT_FPS,
    KEYFRAME_INTERVAL_SECONDS,
    MAX_FPS,
    MIDI_MIME_TYPE,
    MIN_FPS,
    VIDEO_CODECS,
)
from transcode.service.errors import (
    ConfigurationError,
    Result,
    SizeLimitExceeded,
    SourceUnavailable,
)
from transcode.service.variants import expand_rate

MODE_AUDIO = 'audio'
MODE_VIDEO = 'video'
MODE_MIDI = 'midi'


@dataclass(frozen=True)
class SourceMaterial:
    """Resolved local input for one attempt"""

    path: Path
    # Variant key of the derivative being remuxed, None for the original
    remux_key: Optional[str] = None

    @property
    def is_remux(self):
        return self.remux_key is not None


@dataclass(frozen=True)
class EncodeParams:
    """Concrete encoder parameters for one variant of one asset"""

    mode: str
    extension: str
    passes: int = 1
    video_enabled: bool = True
    video_codec: Optional[str] = None
    remux: bool = False
    effective_fps: float = DEFAULT_FPS
    output_fps: Optional[float] = None
    keyframe_interval: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    aspect: Optional[str] = None
    video_bitrate: Optional[int] = None
    minrate: Optional[int] = None
    maxrate: Optional[int] = None
    crf: Optional[int] = None
    speed: Optional[int] = None
    tile_columns: Optional[int] = None
    slices: Optional[int] = None
    deinterlace: Optional[str] = None
    container_format: Optional[str] = None
    audio_enabled: bool = True
    audio_encoder: str = DEFAULT_AUDIO_ENCODER
    audio_bitrate: Optional[int] = None
    audio_quality: Optional[int] = None
    samplerate: Optional[int] = None
    channels: Optional[int] = None
    movflags: Tuple[str, ...] = field(default_factory=tuple)
    frag_duration_us: Optional[int] = None
    strict_experimental: bool = False
    estimated_kib: Optional[int] = None


def fraction_to_float(value):
    """Parse '30000/1001' style frame rates"""
    text = str(value)
    if '/' in text:
        numerator, denominator = text.split('/', 1)
        return float(numerator) / float(denominator)
    return float(text)


def should_frame_double(asset, spec):
    """
    Whether deinterlacing should emit one frame per field.

    Doubling only applies to interlaced sources without a fixed frame rate
    and without an fpsmax cap below 60.
    """
    if not asset.interlaced:
        return False
    if spec.framerate:
        return False
    if spec.fpsmax and fraction_to_float(spec.fpsmax) < 60:
        return False
    return True


def effective_frame_rate(asset, spec):
    """
    Frame rate the output will have, bounded to [MIN_FPS, fpsmax or MAX_FPS].

    Suitable for scaling linear parameters like the target bitrate.
    """
    if spec.framerate:
        fps = fraction_to_float(spec.framerate)
    else:
        fps = asset.source_frame_rate
    if should_frame_double(asset, spec):
        fps *= 2

    if fps < MIN_FPS:
        return MIN_FPS
    maximum = fraction_to_float(spec.fpsmax) if spec.fpsmax else MAX_FPS
    if fps > maximum:
        return maximum
    return fps


def scale_rate(rate, fps):
    """
    Scale a bitrate specified for DEFAULT_FPS to the effective frame rate.

    Not linear: frames above 30 fps count half, so 60 fps gets 1.5x the base.
    """
    base = expand_rate(rate)
    lo_fps = min(fps, DEFAULT_FPS)
    hi_fps = fps - lo_fps
    scaled = base * lo_fps / DEFAULT_FPS + 0.5 * base * hi_fps / DEFAULT_FPS
    return int(scaled)


def keyframe_interval(fps):
    return int(round(fps * KEYFRAME_INTERVAL_SECONDS))


def parse_max_size(max_size):
    """
    Parse a max size constraint.

    Args:
        max_size: 'WIDTHxHEIGHT' or a bare width (16:9 assumed)

    Returns:
        tuple[int, int]
    """
    text = str(max_size).lower()
    if 'x' in text:
        width, height = text.split('x', 1)
        return int(width), int(height)
    width = int(text)
    return width, int(width * 9 / 16)


def max_size_transform(source_width, source_height, max_size):
    """
    Fit the source inside max_size preserving aspect ratio, never upscaling.

    Dimensions are rounded down to even numbers for codecs that need them.
    """
    max_width, max_height = parse_max_size(max_size)
    if source_width <= 0 or source_height <= 0:
        return _even(max_width), _even(max_height)

    source_aspect = source_width / source_height
    target_aspect = max_width / max_height
    width, height = source_width, source_height
    if source_aspect <= target_aspect:
        if source_height > max_height:
            height = max_height
            width = int(height * source_width / source_height)
    else:
        if source_width > max_width:
            width = max_width
            height = int(width * source_height / source_width)
    return _even(width), _even(height)


def _even(value):
    return max(2, int(value) - int(value) % 2)


def estimate_size_kib(bitrate, duration):
    return int(round((bitrate / 8) * duration / 1024))


def check_size_limits(estimated_kib, settings, manual_override=False):
    """
    Enforce the output size limits.

    The hard limit can only be raised in configuration. The soft limit can be
    overridden per job with the manual override flag.

    Returns:
        Result carrying the estimate or a SizeLimitExceeded error
    """
    hard = settings.hard_size_limit_kib
    if hard > 0 and estimated_kib > hard:
        return Result.fail(SizeLimitExceeded(estimated_kib, hard, hard=True))
    soft = settings.soft_size_limit_kib
    if soft > 0 and estimated_kib > soft and not manual_override:
        return Result.fail(SizeLimitExceeded(estimated_kib, soft, hard=False))
    return Result.ok(estimated_kib)


def resolve_source_material(asset, spec, storage, remux=False):
    """
    Pick the input file for an attempt.

    When the job asks for a remux and the variant lists remux sources, the
    first alternate derivative that physically exists is used instead of the
    original upload.

    Returns:
        Result carrying SourceMaterial or a SourceUnavailable error
    """
    if remux and spec.remux_from:
        for alt_key in spec.remux_from:
            alt_path = storage.derivative_path(asset, alt_key)
            if storage.exists(alt_path):
                return Result.ok(SourceMaterial(path=storage.local_path(alt_path), remux_key=alt_key))

    if not asset.path or not Path(asset.path).is_file():
        return Result.fail(SourceUnavailable(f'{asset.name}: Source not found {asset.path}'))
    return Result.ok(SourceMaterial(path=Path(asset.path)))


def derive_encode_params(asset, spec, material, settings, manual_override=False):
    """
    Compute encoder parameters for a variant.

    Args:
        asset: Asset being transcoded
        spec: VariantSpec of the target derivative
        material: SourceMaterial resolved for this attempt
        settings: TranscodeSettings
        manual_override: Allow exceeding the soft size limit

    Returns:
        Result carrying EncodeParams, or a ConfigurationError /
        SizeLimitExceeded error
    """
    values = {
        'extension': spec.extension,
        'passes': 2 if spec.twopass and not material.is_remux else 1,
    }

    if spec.novideo:
        values['mode'] = MODE_MIDI if asset.mime_type == MIDI_MIME_TYPE else MODE_AUDIO
        values['video_enabled'] = False
        values['passes'] = 1
    else:
        if spec.video_codec not in VIDEO_CODECS:
            return Result.fail(
                ConfigurationError(f'Error unknown target encode codec: {spec.video_codec}')
            )
        values['mode'] = MODE_VIDEO
        video = _derive_video(asset, spec, material, settings, manual_override)
        if not video.is_ok:
            return video
        values.update(video.value)

    values.update(_derive_audio(spec))

    container = _derive_container(spec)
    if not container.is_ok:
        return container
    values.update(container.value)

    return Result.ok(EncodeParams(**values))


def _derive_video(asset, spec, material, settings, manual_override):
    fps = effective_frame_rate(asset, spec)
    values = {
        'video_codec': spec.video_codec,
        'effective_fps': fps,
        'keyframe_interval': keyframe_interval(fps),
        'remux': material.is_remux,
    }

    if spec.framerate:
        values['output_fps'] = fraction_to_float(spec.framerate)
    else:
        source_fps = asset.source_frame_rate
        if asset.interlaced:
            source_fps *= 2
        if source_fps > fps:
            values['output_fps'] = fps

    if not material.is_remux:
        values.update(
            crf=spec.crf,
            speed=spec.speed,
            tile_columns=spec.tile_columns,
            slices=spec.slices,
        )

    if spec.video_bitrate:
        bitrate = scale_rate(spec.video_bitrate, fps)
        estimated = estimate_size_kib(bitrate, asset.duration)
        limits = check_size_limits(estimated, settings, manual_override)
        if not limits.is_ok:
            return limits
        values['video_bitrate'] = bitrate
        values['estimated_kib'] = estimated
        if spec.minrate:
            values['minrate'] = scale_rate(spec.minrate, fps)
        if spec.maxrate:
            values['maxrate'] = scale_rate(spec.maxrate, fps)

    if not material.is_remux:
        if asset.interlaced:
            # yadif=1 emits one frame per field, yadif=0 one per frame
            values['deinterlace'] = 'yadif=1' if should_frame_double(asset, spec) else 'yadif=0'
        if spec.width and spec.height:
            values['width'] = int(spec.width)
            values['height'] = int(spec.height)
            values['aspect'] = spec.aspect or f'{asset.width}:{asset.height}'
        elif spec.max_size:
            values['width'], values['height'] = max_size_transform(
                asset.width, asset.height, spec.max_size
            )

    if spec.video_codec in ('h264', 'mpeg4') or spec.is_streaming:
        values['container_format'] = 'mp4'
    elif spec.video_codec in ('vp8', 'vp9'):
        values['container_format'] = 'webm'

    return Result.ok(values)


def _derive_audio(spec):
    values = {
        'audio_enabled': not spec.noaudio,
        'audio_quality': spec.audio_quality,
        'samplerate': spec.samplerate,
        'channels': spec.channels,
    }
    if spec.audio_bitrate:
        values['audio_bitrate'] = expand_rate(spec.audio_bitrate)
    if spec.audio_codec:
        encoder = AUDIO_ENCODERS.get(spec.audio_codec, spec.audio_codec)
        values['audio_encoder'] = encoder
        if encoder == 'aac':
            values['strict_experimental'] = True
    return values


def _derive_container(spec):
    movflags = []
    values = {}
    if spec.is_base_media_format and not spec.is_streaming:
        movflags.append('faststart')

    if spec.is_streaming:
        if spec.is_base_media_format:
            # Fragment in place; the playlist is generated from the fragments
            if spec.novideo or spec.intraframe:
                movflags += ['empty_moov', 'default_base_moof']
                values['frag_duration_us'] = KEYFRAME_INTERVAL_SECONDS * 1000000
            else:
                movflags += ['frag_keyframe', 'empty_moov', 'default_base_moof']
            values['strict_experimental'] = True
        elif spec.extension != 'mp3':
            return Result.fail(
                ConfigurationError(
                    'Invalid HLS track media type, expected .mp4, .m4v, .m4a, .mov, .3gp, or .mp3'
                )
            )

    values['movflags'] = tuple(movflags)
    return Result.ok(values)
