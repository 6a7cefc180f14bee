"""
Transcode constants.

Centralized definitions of frame rate bounds, codecs and container families.
"""

# Bitrates and keyframe distances are specified for DEFAULT_FPS and scaled
# for higher frame rates
DEFAULT_FPS = 30
MAX_FPS = 60
MIN_FPS = 24

# Target seconds between keyframes, also the HLS fragment interval
KEYFRAME_INTERVAL_SECONDS = 10
HLS_SEGMENT_DURATION = 10

# Video codecs the encoder path knows how to drive
VIDEO_CODECS = ['vp8', 'vp9', 'h264', 'h263', 'mpeg4', 'mjpeg']

# Audio codec name -> ffmpeg encoder
AUDIO_ENCODERS = {
    'vorbis': 'libvorbis',
    'opus': 'libopus',
    'mp3': 'libmp3lame',
}
DEFAULT_AUDIO_ENCODER = 'libvorbis'

# ISO base media file format extensions
BASE_MEDIA_EXTENSIONS = ['mp4', 'm4v', 'm4a', 'mov', '3gp']

STREAMING_NONE = 'none'
STREAMING_HLS = 'hls'

MIDI_MIME_TYPE = 'audio/midi'

HLS_PLAYLIST_SUFFIX = '.m3u8'
