"""
Derivative variant catalog.

Each variant key names one target encoding (codec, size, bitrate, streaming
mode). The catalog is an immutable value built once at startup and handed to
the components that need it.
"""
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional, Tuple

from transcode.service.constants import (
    BASE_MEDIA_EXTENSIONS,
    STREAMING_HLS,
    STREAMING_NONE,
)
from transcode.service.errors import ConfigurationError, Result

# Display / preference order of codec families
CODEC_ORDER = ['vp9', 'vp8', 'h264', 'theora', 'mjpeg', 'opus', 'mp3', 'vorbis', 'aac']


@dataclass(frozen=True)
class VariantSpec:
    """Declarative target for one derivative"""

    key: str
    mime_type: str
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    novideo: bool = False
    noaudio: bool = False
    intraframe: bool = False
    video_bitrate: Optional[str] = None
    minrate: Optional[str] = None
    maxrate: Optional[str] = None
    crf: Optional[int] = None
    max_size: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    aspect: Optional[str] = None
    framerate: Optional[str] = None
    fpsmax: Optional[str] = None
    speed: Optional[int] = None
    tile_columns: Optional[int] = None
    slices: Optional[int] = None
    audio_bitrate: Optional[str] = None
    audio_quality: Optional[int] = None
    samplerate: Optional[int] = None
    channels: Optional[int] = None
    streaming: str = STREAMING_NONE
    twopass: bool = False
    remux_from: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def extension(self):
        return self.key.rsplit('.', 1)[-1].lower()

    @property
    def codec(self):
        """Codec family used for grouping, video first"""
        return self.video_codec or self.audio_codec or self.key

    @property
    def is_streaming(self):
        return self.streaming == STREAMING_HLS

    @property
    def is_base_media_format(self):
        return is_base_media_format(self.extension)


def is_base_media_format(extension):
    """ISO base media containers (mp4 family) support fragmenting"""
    return extension.lower().lstrip('.') in BASE_MEDIA_EXTENSIONS


def expand_rate(rate):
    """
    Expand a bitrate that may carry a k/m/g suffix.

    Args:
        rate: int or string like '512k', '1.2m'

    Returns:
        int: bits per second
    """
    if isinstance(rate, (int, float)):
        return int(rate)
    match = re.fullmatch(r'\s*([0-9]*\.?[0-9]+)\s*([kmgKMG]?)\s*', str(rate))
    if not match:
        raise ValueError(f'Invalid rate: {rate!r}')
    value = float(match.group(1))
    multiplier = {'': 1, 'k': 1000, 'm': 1000 ** 2, 'g': 1000 ** 3}[match.group(2).lower()]
    return int(value * multiplier)


def _vp9(label, max_size, bitrate, tile_columns):
    return VariantSpec(
        key=f'{label}.vp9.webm',
        mime_type='video/webm; codecs="vp9, opus"',
        video_codec='vp9',
        audio_codec='opus',
        max_size=max_size,
        video_bitrate=bitrate,
        minrate=_fraction_of(bitrate, 0.5),
        maxrate=_fraction_of(bitrate, 1.45),
        speed=2,
        tile_columns=tile_columns,
        audio_bitrate='96k',
        samplerate=48000,
        channels=2,
        twopass=True,
    )


def _vp9_stream(label, max_size, bitrate, tile_columns):
    return VariantSpec(
        key=f'{label}.video.vp9.mp4',
        mime_type='video/mp4; codecs="vp09.00.51.08"',
        video_codec='vp9',
        noaudio=True,
        max_size=max_size,
        video_bitrate=bitrate,
        minrate=_fraction_of(bitrate, 0.5),
        maxrate=_fraction_of(bitrate, 1.45),
        speed=2,
        tile_columns=tile_columns,
        streaming=STREAMING_HLS,
        twopass=True,
        remux_from=(f'{label}.vp9.webm',),
    )


def _vp8(label, max_size, bitrate, slices):
    return VariantSpec(
        key=f'{label}.webm',
        mime_type='video/webm; codecs="vp8, vorbis"',
        video_codec='vp8',
        audio_codec='vorbis',
        max_size=max_size,
        video_bitrate=bitrate,
        crf=10,
        slices=slices,
        audio_quality=1,
        samplerate=44100,
        channels=2,
        twopass=True,
    )


def _h264(label, max_size, bitrate):
    return VariantSpec(
        key=f'{label}.mp4',
        mime_type='video/mp4; codecs="avc1.42E01E, mp4a.40.2"',
        video_codec='h264',
        audio_codec='aac',
        max_size=max_size,
        video_bitrate=bitrate,
        audio_bitrate='128k',
        channels=2,
    )


def _fraction_of(rate, factor):
    return str(int(expand_rate(rate) * factor))


DERIVATIVES = (
    _vp9('120p', '213x120', '80k', 0),
    _vp9('180p', '320x180', '134k', 0),
    _vp9('240p', '426x240', '178k', 0),
    _vp9('360p', '640x360', '326k', 1),
    _vp9('480p', '854x480', '586k', 1),
    _vp9('720p', '1280x720', '1200k', 2),
    _vp9('1080p', '1920x1080', '2400k', 3),
    _vp9('1440p', '2560x1440', '4800k', 3),
    _vp9('2160p', '3840x2160', '9600k', 4),
    _vp8('160p', '288x160', '128k', 1),
    _vp8('240p', '426x240', '256k', 1),
    _vp8('360p', '640x360', '512k', 1),
    _vp8('480p', '854x480', '1024k', 2),
    _vp8('720p', '1280x720', '2048k', 4),
    _vp8('1080p', '1920x1080', '4096k', 4),
    _h264('360p', '640x360', '512k'),
    _h264('720p', '1280x720', '2000k'),
    _h264('1080p', '1920x1080', '4000k'),
    VariantSpec(
        key='ogg',
        mime_type='audio/ogg; codecs="vorbis"',
        audio_codec='vorbis',
        novideo=True,
        audio_quality=3,
        samplerate=44100,
        channels=2,
    ),
    VariantSpec(
        key='opus',
        mime_type='audio/ogg; codecs="opus"',
        audio_codec='opus',
        novideo=True,
        audio_bitrate='96k',
        samplerate=48000,
        channels=2,
    ),
    VariantSpec(
        key='mp3',
        mime_type='audio/mpeg',
        audio_codec='mp3',
        novideo=True,
        audio_bitrate='128k',
        samplerate=44100,
        channels=2,
    ),
    VariantSpec(
        key='m4a',
        mime_type='audio/mp4; codecs="mp4a.40.5"',
        audio_codec='aac',
        novideo=True,
        audio_bitrate='128k',
        channels=2,
    ),
    VariantSpec(
        key='144p.mjpeg.mov',
        mime_type='video/quicktime; codecs="jpeg"',
        video_codec='mjpeg',
        noaudio=True,
        intraframe=True,
        max_size='256x144',
        framerate='15',
        video_bitrate='140k',
        streaming=STREAMING_HLS,
    ),
    _vp9_stream('240p', '426x240', '178k', 0),
    _vp9_stream('360p', '640x360', '326k', 1),
    _vp9_stream('480p', '854x480', '586k', 1),
    _vp9_stream('720p', '1280x720', '1200k', 2),
    _vp9_stream('1080p', '1920x1080', '2400k', 3),
    VariantSpec(
        key='stereo.audio.opus.mp4',
        mime_type='audio/mp4; codecs="opus"',
        audio_codec='opus',
        novideo=True,
        audio_bitrate='96k',
        samplerate=48000,
        channels=2,
        streaming=STREAMING_HLS,
    ),
    VariantSpec(
        key='stereo.audio.mp3',
        mime_type='audio/mpeg',
        audio_codec='mp3',
        novideo=True,
        audio_bitrate='128k',
        samplerate=44100,
        channels=2,
        streaming=STREAMING_HLS,
    ),
)


class VariantCatalog:
    """Read-only registry of VariantSpecs keyed by variant key"""

    def __init__(self, variants):
        self._variants = MappingProxyType({variant.key: variant for variant in variants})

    @classmethod
    def load(cls, enabled_keys=()):
        """
        Build the catalog from the built-in derivative table.

        Args:
            enabled_keys: Optional subset of keys to keep; empty keeps all

        Raises:
            ConfigurationError: If an enabled key isn't a known derivative
        """
        known = {variant.key for variant in DERIVATIVES}
        unknown = [key for key in enabled_keys if key not in known]
        if unknown:
            raise ConfigurationError(f"Unknown transcode keys: {', '.join(unknown)}")
        if not enabled_keys:
            return cls(DERIVATIVES)
        return cls(variant for variant in DERIVATIVES if variant.key in enabled_keys)

    def __contains__(self, key):
        return key in self._variants

    def __iter__(self):
        return iter(self._variants.values())

    def __len__(self):
        return len(self._variants)

    def keys(self):
        return list(self._variants.keys())

    def get(self, key):
        return self._variants.get(key)

    def lookup(self, key):
        """
        Look up a variant, as a stage Result.

        Returns:
            Result carrying the VariantSpec or a ConfigurationError
        """
        spec = self._variants.get(key)
        if spec is None:
            return Result.fail(ConfigurationError(f'Transcode key {key} not found, skipping'))
        if spec.novideo and not spec.audio_codec:
            return Result.fail(ConfigurationError(f'Invalid audio track options for {key}'))
        if not spec.novideo and not spec.video_codec:
            return Result.fail(ConfigurationError(f'Invalid video track options for {key}'))
        return Result.ok(spec)

    def streaming_variants(self):
        return [spec for spec in self if spec.is_streaming]

    def sort_keys(self, keys):
        """
        Order variant keys by codec preference, then by key descending.

        Unknown keys sort last.
        """
        def sort_key(key):
            spec = self.get(key)
            codec = spec.codec if spec else key
            if codec in CODEC_ORDER:
                return (0, CODEC_ORDER.index(codec), _natural_desc(key))
            return (1, 0, _natural_desc(key))

        return sorted(keys, key=sort_key)


def _natural_desc(key):
    # Natural sort (so 1080p follows 720p), negated for descending order
    parts = re.split(r'(\d+)', key)
    return tuple(
        (0, -int(part), '') if part.isdigit() else (1, 0, _invert(part)) for part in parts
    )


def _invert(text):
    return tuple(-ord(char) for char in text)
