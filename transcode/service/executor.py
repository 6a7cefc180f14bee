"""
Encoder invocation.

Builds ffmpeg (and fluidsynth, for MIDI sources) command lines from
EncodeParams and runs them through the sandbox. The executor doesn't touch
job state; callers own all bookkeeping.
"""
from pathlib import Path
import os
import tempfile

from transcode.service.errors import Result, SandboxExecutionFailure
from transcode.service.params import MODE_MIDI

# Fixed first-pass speed for VP9; the first pass only gathers statistics
VP9_FIRST_PASS_SPEED = 4
MIDI_SAMPLE_RATE = 44100


class EncodeTarget:
    """
    Temporary output location for one attempt.

    Use as a context manager; the directory and everything in it is removed
    on exit whatever the outcome.
    """

    def __init__(self, extension, tmp_dir=None):
        self.extension = extension
        self.tmp_dir = tmp_dir
        self._tmp = None
        self.directory = None

    def __enter__(self):
        self._tmp = tempfile.TemporaryDirectory(
            prefix='transcode-', dir=str(self.tmp_dir) if self.tmp_dir else None
        )
        self.directory = Path(self._tmp.name)
        return self

    def __exit__(self, exc_type, exc, tb):
        self._tmp.cleanup()
        self._tmp = None
        return False

    @property
    def media_path(self):
        return self.directory / f'output.{self.extension}'

    @property
    def playlist_path(self):
        return self.directory / 'output.m3u8'

    @property
    def passlog_path(self):
        return self.directory / 'ffmpeg2pass'


def video_options(params, settings, pass_number=0):
    """ffmpeg video stream options"""
    if params.remux:
        return ['-vcodec', 'copy']

    args = []
    codec = params.video_codec
    threads = str(settings.ffmpeg_threads)
    if codec in ('vp8', 'vp9'):
        args += ['-threads', threads]
        if codec == 'vp9' and settings.vp9_row_mt:
            args += ['-row-mt', '1']
        args += ['-pix_fmt', 'yuv420p']
        if params.crf is not None:
            args += ['-crf', str(params.crf)]
        if codec == 'vp9':
            args += ['-vcodec', 'libvpx-vp9']
            if params.tile_columns is not None:
                args += ['-tile-columns', str(params.tile_columns)]
        else:
            args += ['-vcodec', 'libvpx']
            if params.slices is not None:
                args += ['-slices', str(params.slices)]
        args += ['-quality', 'good']
        speed = params.speed
        if codec == 'vp9' and pass_number == 1:
            speed = VP9_FIRST_PASS_SPEED
        if speed is not None:
            args += ['-speed', str(speed)]
    elif codec == 'h264':
        args += ['-threads', threads, '-vcodec', 'libx264', '-pix_fmt', 'yuv420p',
                 '-rc-lookahead', '16']
    else:
        args += ['-vcodec', codec, '-pix_fmt', 'yuv420p']

    if params.keyframe_interval:
        args += ['-g', str(params.keyframe_interval)]
    if params.video_bitrate:
        args += ['-b:v', str(params.video_bitrate)]
    if params.minrate:
        args += ['-minrate', str(params.minrate)]
    if params.maxrate:
        args += ['-maxrate', str(params.maxrate)]

    filters = []
    if params.deinterlace:
        filters.append(params.deinterlace)
    if params.width and params.height:
        filters.append(f'scale={params.width}:{params.height}')
    if filters:
        args += ['-vf', ','.join(filters)]
    if params.aspect:
        args += ['-aspect', params.aspect]
    if params.output_fps:
        args += ['-r', _format_fps(params.output_fps)]
    return args


def audio_options(params):
    """ffmpeg audio stream options"""
    if not params.audio_enabled:
        return ['-an']
    args = []
    if params.audio_quality is not None:
        args += ['-aq', str(params.audio_quality)]
    if params.audio_bitrate:
        args += ['-ab', str(params.audio_bitrate)]
    if params.samplerate:
        args += ['-ar', str(params.samplerate)]
    if params.channels:
        args += ['-ac', str(params.channels)]
    args += ['-acodec', params.audio_encoder]
    return args


def container_options(params, settings):
    args = []
    if params.movflags:
        args += ['-movflags', ''.join(f'+{flag}' for flag in params.movflags)]
    if params.frag_duration_us:
        args += ['-frag_duration', str(params.frag_duration_us)]
    if params.strict_experimental:
        args += ['-strict', 'experimental']
    if not settings.use_ffmpeg2:
        # Avoids "Too many packets buffered for output stream" on sparse streams
        args += ['-max_muxing_queue_size', '1024']
    return args


def build_ffmpeg_args(source, output, params, settings, pass_number=0, passlog=None):
    """
    Build one ffmpeg invocation.

    Args:
        source: Input media path
        output: Output media path
        params: EncodeParams
        settings: TranscodeSettings
        pass_number: 0 for single pass, 1 or 2 for two-pass encodes
        passlog: Shared pass log prefix for two-pass encodes

    Returns:
        list[str]
    """
    args = [settings.ffmpeg_path, '-nostdin', '-y', '-i', str(source)]

    if params.video_enabled:
        args += video_options(params, settings, pass_number)
    else:
        args += ['-vn']

    if pass_number == 1:
        args += ['-an']
    else:
        args += audio_options(params)

    if pass_number:
        args += ['-pass', str(pass_number), '-passlogfile', str(passlog)]

    if pass_number == 1:
        # First pass only writes the statistics log
        args += ['-f', 'null', os.devnull]
        return args

    args += container_options(params, settings)
    if params.container_format:
        args += ['-f', params.container_format]
    args.append(str(output))
    return args


def build_fluidsynth_args(source, output, settings, samplerate=None):
    return [
        settings.fluidsynth_path,
        '-nli',
        '-r', str(samplerate or MIDI_SAMPLE_RATE),
        '-T', 'wav',
        '-F', str(output),
        settings.soundfont_path,
        str(source),
    ]


def _format_fps(fps):
    if float(fps).is_integer():
        return str(int(fps))
    return f'{fps:.3f}'


class EncodeExecutor:
    """Runs the encode for one attempt inside the sandbox"""

    def __init__(self, sandbox, settings):
        self.sandbox = sandbox
        self.settings = settings

    def execute(self, source_path, params, target, logger=None):
        """
        Encode source_path into target.media_path.

        Args:
            source_path: Local input file (original or remux source)
            params: EncodeParams for the variant
            target: Entered EncodeTarget for this attempt
            logger: Optional callable(str) for logging

        Returns:
            Result carrying the output Path or a SandboxExecutionFailure
        """
        def log(message):
            if logger:
                logger(message)

        source = Path(source_path)
        if params.mode == MODE_MIDI:
            rendered = self._render_midi(source, params, target, logger)
            if not rendered.is_ok:
                return rendered
            source = rendered.value

        if params.passes == 2:
            commands = [
                build_ffmpeg_args(source, target.media_path, params, self.settings,
                                  pass_number=pass_number, passlog=target.passlog_path)
                for pass_number in (1, 2)
            ]
        else:
            commands = [build_ffmpeg_args(source, target.media_path, params, self.settings)]

        for index, argv in enumerate(commands, start=1):
            if len(commands) > 1:
                log(f"Encoding pass {index} of {len(commands)}")
            result = self.sandbox.run(argv, cwd=target.directory, logger=logger)
            if not result.succeeded:
                return Result.fail(SandboxExecutionFailure(
                    'Encoding failed',
                    exit_code=result.exit_code,
                    output=result.output,
                    timed_out=result.timed_out,
                ))

        output = target.media_path
        if not output.is_file() or output.stat().st_size == 0:
            return Result.fail(SandboxExecutionFailure('Encoding failed: output file missing or empty'))

        log(f"Encoding complete: {output.stat().st_size} bytes")
        return Result.ok(output)

    def _render_midi(self, source, params, target, logger):
        wav_path = target.directory / 'rendered.wav'
        argv = build_fluidsynth_args(source, wav_path, self.settings, params.samplerate)
        result = self.sandbox.run(argv, cwd=target.directory, logger=logger)
        if not result.succeeded:
            return Result.fail(SandboxExecutionFailure(
                'MIDI rendering failed',
                exit_code=result.exit_code,
                output=result.output,
                timed_out=result.timed_out,
            ))
        if not wav_path.is_file() or wav_path.stat().st_size == 0:
            return Result.fail(SandboxExecutionFailure('MIDI rendering failed: no audio produced'))
        return Result.ok(wav_path)
