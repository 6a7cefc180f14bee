"""
Configuration adapter for transcode settings.

Centralizes access to Django settings so the rest of the service layer
receives one immutable TranscodeSettings value instead of reading globals.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from django.conf import settings

from transcode.service.constants import HLS_SEGMENT_DURATION


@dataclass(frozen=True)
class TranscodeSettings:
    """Snapshot of the TRANSCODE_* settings"""

    ffmpeg_path: str = 'ffmpeg'
    fluidsynth_path: str = 'fluidsynth'
    soundfont_path: str = ''
    ffmpeg_threads: int = 1
    vp9_row_mt: bool = False
    use_ffmpeg2: bool = False
    time_limit: int = 8 * 60 * 60
    memory_limit_kib: int = 2 * 1024 * 1024
    sandbox_prefix: Tuple[str, ...] = field(default_factory=tuple)
    hard_size_limit_kib: int = 0
    soft_size_limit_kib: int = 0
    derivative_dir: Path = Path('derivatives')
    derivative_base_url: str = ''
    tmp_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    enabled_variants: Tuple[str, ...] = field(default_factory=tuple)
    hls_segment_duration: int = HLS_SEGMENT_DURATION
    cdn_purge_enabled: bool = False
    cdn_purge_timeout: int = 5

    @property
    def cpu_time_limit(self):
        """CPU seconds allowed for one sandboxed command"""
        return max(1, self.ffmpeg_threads) * self.time_limit

    @property
    def memory_limit_bytes(self):
        return self.memory_limit_kib * 1024


def _optional_path(value):
    if not value:
        return None
    return Path(value)


def load_transcode_settings():
    """
    Build TranscodeSettings from Django settings.

    Returns:
        TranscodeSettings
    """
    return TranscodeSettings(
        ffmpeg_path=getattr(settings, 'TRANSCODE_FFMPEG_PATH', 'ffmpeg'),
        fluidsynth_path=getattr(settings, 'TRANSCODE_FLUIDSYNTH_PATH', 'fluidsynth'),
        soundfont_path=getattr(settings, 'TRANSCODE_SOUNDFONT_PATH', ''),
        ffmpeg_threads=int(getattr(settings, 'TRANSCODE_FFMPEG_THREADS', 1)),
        vp9_row_mt=bool(getattr(settings, 'TRANSCODE_VP9_ROW_MT', False)),
        use_ffmpeg2=bool(getattr(settings, 'TRANSCODE_USE_FFMPEG2', False)),
        time_limit=int(getattr(settings, 'TRANSCODE_TIME_LIMIT', 8 * 60 * 60)),
        memory_limit_kib=int(getattr(settings, 'TRANSCODE_MEMORY_LIMIT', 2 * 1024 * 1024)),
        sandbox_prefix=tuple(getattr(settings, 'TRANSCODE_SANDBOX_PREFIX', ())),
        hard_size_limit_kib=int(getattr(settings, 'TRANSCODE_HARD_SIZE_LIMIT', 0)),
        soft_size_limit_kib=int(getattr(settings, 'TRANSCODE_SOFT_SIZE_LIMIT', 0)),
        derivative_dir=Path(getattr(settings, 'TRANSCODE_DERIVATIVE_DIR', 'derivatives')),
        derivative_base_url=getattr(settings, 'TRANSCODE_DERIVATIVE_BASE_URL', ''),
        tmp_dir=_optional_path(getattr(settings, 'TRANSCODE_TMP_DIR', '')),
        log_dir=_optional_path(getattr(settings, 'TRANSCODE_LOG_DIR', '')),
        enabled_variants=tuple(getattr(settings, 'TRANSCODE_ENABLED_VARIANTS', ())),
        hls_segment_duration=int(
            getattr(settings, 'TRANSCODE_HLS_SEGMENT_DURATION', HLS_SEGMENT_DURATION)
        ),
        cdn_purge_enabled=bool(getattr(settings, 'TRANSCODE_CDN_PURGE_ENABLED', False)),
        cdn_purge_timeout=int(getattr(settings, 'TRANSCODE_CDN_PURGE_TIMEOUT', 5)),
    )
