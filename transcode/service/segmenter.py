"""
HLS segmenting for single-file encodes.

Streaming variants are encoded as one fragmented MP4 (or plain MP3) file.
The segmenter walks the file's fragments (or MPEG audio frames), groups them
into segments of roughly the target duration that start on keyframes, and
writes a byte-range playlist that points into the single media file.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote
import math
import struct

from transcode.service.errors import Result, TranscodeError

# Sample flag bit marking a sample that is not a sync sample
SAMPLE_IS_NON_SYNC = 0x10000

# tfhd optional field flags
TFHD_BASE_DATA_OFFSET = 0x01
TFHD_SAMPLE_DESCRIPTION_INDEX = 0x02
TFHD_DEFAULT_SAMPLE_DURATION = 0x08
TFHD_DEFAULT_SAMPLE_SIZE = 0x10
TFHD_DEFAULT_SAMPLE_FLAGS = 0x20

# trun optional field flags
TRUN_DATA_OFFSET = 0x01
TRUN_FIRST_SAMPLE_FLAGS = 0x04
TRUN_SAMPLE_DURATION = 0x100
TRUN_SAMPLE_SIZE = 0x200
TRUN_SAMPLE_FLAGS = 0x400
TRUN_SAMPLE_CTO = 0x800

# Keyframe intervals are rounded to whole frames, so a fragment can fall up
# to half a frame short of the target (599 frames at 59.94 fps is 9.993s)
SEGMENT_DURATION_TOLERANCE = 0.05


@dataclass
class Box:
    type: str
    offset: int
    size: int
    header_size: int

    @property
    def body_offset(self):
        return self.offset + self.header_size

    @property
    def end(self):
        return self.offset + self.size


@dataclass
class Segment:
    """A byte range of the media file with its play duration in seconds"""
    offset: int
    size: int
    duration: float
    keyframe: bool = True

    @property
    def end(self):
        return self.offset + self.size


@dataclass
class Track:
    track_id: int
    timescale: int = 0
    handler: str = ''
    default_sample_duration: int = 0
    default_sample_size: int = 0
    default_sample_flags: int = 0


def read_boxes(f, start, end):
    """
    Read the box headers between two offsets of an open binary file.

    Returns:
        list[Box]
    """
    boxes = []
    offset = start
    while offset + 8 <= end:
        f.seek(offset)
        header = f.read(8)
        if len(header) < 8:
            break
        size, box_type = struct.unpack('>I4s', header)
        header_size = 8
        if size == 1:
            size = struct.unpack('>Q', f.read(8))[0]
            header_size = 16
        elif size == 0:
            size = end - offset
        if size < header_size:
            raise ValueError(f'Invalid box size {size} at offset {offset}')
        boxes.append(Box(box_type.decode('latin-1'), offset, size, header_size))
        offset += size
    return boxes


def _full_box_header(data):
    version = data[0]
    flags = int.from_bytes(data[1:4], 'big')
    return version, flags


class MP4Segmenter:
    """Segments a fragmented MP4 (moof/mdat pairs after an empty moov)"""

    def __init__(self, path):
        self.path = Path(path)
        self.tracks: Dict[int, Track] = {}
        self.init_size = 0
        self.fragments: List[Segment] = []
        self.segments: List[Segment] = []
        self._sequence_offsets: List[int] = []
        self._trailer: Optional[Box] = None
        self._parse()

    def _parse(self):
        file_size = self.path.stat().st_size
        with open(self.path, 'rb') as f:
            boxes = read_boxes(f, 0, file_size)
            current = None
            for box in boxes:
                if box.type == 'moov':
                    self._parse_moov(f, box)
                elif box.type == 'moof':
                    if not self.fragments:
                        self.init_size = box.offset
                    duration, keyframe = self._parse_moof(f, box)
                    current = Segment(box.offset, box.size, duration, keyframe)
                    self.fragments.append(current)
                elif box.type == 'mfra':
                    self._trailer = box
                elif current is not None:
                    current.size = box.end - current.offset

        if not self.fragments:
            raise ValueError(f'{self.path.name} is not a fragmented MP4 file')
        self.segments = list(self.fragments)

    def _parse_moov(self, f, moov):
        for box in read_boxes(f, moov.body_offset, moov.end):
            if box.type == 'trak':
                self._parse_trak(f, box)
            elif box.type == 'mvex':
                for trex in read_boxes(f, box.body_offset, box.end):
                    if trex.type != 'trex':
                        continue
                    f.seek(trex.body_offset)
                    data = f.read(24)
                    track_id, _, duration, size, flags = struct.unpack('>IIIII', data[4:24])
                    track = self.tracks.setdefault(track_id, Track(track_id))
                    track.default_sample_duration = duration
                    track.default_sample_size = size
                    track.default_sample_flags = flags

    def _parse_trak(self, f, trak):
        track_id = None
        timescale = 0
        handler = ''
        for box in read_boxes(f, trak.body_offset, trak.end):
            if box.type == 'tkhd':
                f.seek(box.body_offset)
                data = f.read(min(box.size - box.header_size, 32))
                version, _ = _full_box_header(data)
                pos = 20 if version == 1 else 12
                track_id = struct.unpack('>I', data[pos:pos + 4])[0]
            elif box.type == 'mdia':
                for child in read_boxes(f, box.body_offset, box.end):
                    f.seek(child.body_offset)
                    if child.type == 'mdhd':
                        data = f.read(24)
                        version, _ = _full_box_header(data)
                        pos = 20 if version == 1 else 12
                        timescale = struct.unpack('>I', data[pos:pos + 4])[0]
                    elif child.type == 'hdlr':
                        data = f.read(12)
                        handler = data[8:12].decode('latin-1')
        if track_id is None:
            return
        track = self.tracks.setdefault(track_id, Track(track_id))
        track.timescale = timescale
        track.handler = handler

    @property
    def primary_track_id(self):
        """Video track when present, else the first track"""
        for track in self.tracks.values():
            if track.handler == 'vide':
                return track.track_id
        for track_id in self.tracks:
            return track_id
        return None

    def _parse_moof(self, f, moof):
        durations = {}
        keyframes = {}
        for box in read_boxes(f, moof.body_offset, moof.end):
            if box.type == 'mfhd':
                # sequence_number follows the full box header
                self._sequence_offsets.append(box.body_offset + 4)
            elif box.type == 'traf':
                track_id, duration, keyframe = self._parse_traf(f, box)
                durations[track_id] = durations.get(track_id, 0.0) + duration
                keyframes.setdefault(track_id, keyframe)

        primary = self.primary_track_id
        if primary in durations:
            return durations[primary], keyframes[primary]
        if durations:
            return max(durations.values()), all(keyframes.values())
        return 0.0, True

    def _parse_traf(self, f, traf):
        track = None
        default_duration = 0
        default_flags = 0
        ticks = 0
        keyframe = None
        for box in read_boxes(f, traf.body_offset, traf.end):
            f.seek(box.body_offset)
            data = f.read(box.size - box.header_size)
            if box.type == 'tfhd':
                _, flags = _full_box_header(data)
                track_id = struct.unpack('>I', data[4:8])[0]
                track = self.tracks.get(track_id) or Track(track_id)
                default_duration = track.default_sample_duration
                default_flags = track.default_sample_flags
                pos = 8
                if flags & TFHD_BASE_DATA_OFFSET:
                    pos += 8
                if flags & TFHD_SAMPLE_DESCRIPTION_INDEX:
                    pos += 4
                if flags & TFHD_DEFAULT_SAMPLE_DURATION:
                    default_duration = struct.unpack('>I', data[pos:pos + 4])[0]
                    pos += 4
                if flags & TFHD_DEFAULT_SAMPLE_SIZE:
                    pos += 4
                if flags & TFHD_DEFAULT_SAMPLE_FLAGS:
                    default_flags = struct.unpack('>I', data[pos:pos + 4])[0]
            elif box.type == 'trun':
                run_ticks, run_keyframe = self._parse_trun(data, default_duration, default_flags)
                ticks += run_ticks
                if keyframe is None:
                    keyframe = run_keyframe

        if track is None:
            raise ValueError(f'traf without tfhd at offset {traf.offset}')
        duration = ticks / track.timescale if track.timescale else 0.0
        if track.handler != 'vide':
            # Audio samples are all independently decodable
            keyframe = True
        return track.track_id, duration, bool(keyframe) if keyframe is not None else True

    @staticmethod
    def _parse_trun(data, default_duration, default_flags):
        _, flags = _full_box_header(data)
        sample_count = struct.unpack('>I', data[4:8])[0]
        pos = 8
        if flags & TRUN_DATA_OFFSET:
            pos += 4
        first_sample_flags = None
        if flags & TRUN_FIRST_SAMPLE_FLAGS:
            first_sample_flags = struct.unpack('>I', data[pos:pos + 4])[0]
            pos += 4

        ticks = 0
        first_flags = None
        for index in range(sample_count):
            duration = default_duration
            sample_flags = default_flags
            if flags & TRUN_SAMPLE_DURATION:
                duration = struct.unpack('>I', data[pos:pos + 4])[0]
                pos += 4
            if flags & TRUN_SAMPLE_SIZE:
                pos += 4
            if flags & TRUN_SAMPLE_FLAGS:
                sample_flags = struct.unpack('>I', data[pos:pos + 4])[0]
                pos += 4
            if flags & TRUN_SAMPLE_CTO:
                pos += 4
            if index == 0:
                first_flags = first_sample_flags if first_sample_flags is not None else sample_flags
            ticks += duration

        if first_flags is None:
            return ticks, None
        return ticks, not (first_flags & SAMPLE_IS_NON_SYNC)

    def consolidate(self, target):
        """
        Merge consecutive fragments into segments of at least target seconds.

        A new segment only starts on a fragment that begins with a keyframe.
        """
        self.segments = consolidate_segments(self.fragments, target)
        return self.segments

    def rewrite(self):
        """
        Fix up the file in place for segmented delivery.

        Fragment sequence numbers are renumbered from 1 and a trailing mfra
        index, which would be stale, is cut off.
        """
        with open(self.path, 'r+b') as f:
            for number, offset in enumerate(self._sequence_offsets, start=1):
                f.seek(offset)
                f.write(struct.pack('>I', number))
            if self._trailer is not None:
                f.truncate(self._trailer.offset)
                self._trailer = None

    def playlist(self, target, media_name):
        return build_playlist(self.segments, media_name, target, init_size=self.init_size)


class MP3Segmenter:
    """Segments an MPEG-1/2/2.5 Layer III file on frame boundaries"""

    BITRATES_V1 = [0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320]
    BITRATES_V2 = [0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160]
    SAMPLE_RATES = {
        3: [44100, 48000, 32000],  # MPEG-1
        2: [22050, 24000, 16000],  # MPEG-2
        0: [11025, 12000, 8000],   # MPEG-2.5
    }

    def __init__(self, path):
        self.path = Path(path)
        self.init_size = 0
        self.fragments: List[Segment] = []
        self.segments: List[Segment] = []
        self._parse()

    @staticmethod
    def id3_size(data):
        """Length of a leading ID3v2 tag, 0 when there is none"""
        if len(data) < 10 or data[:3] != b'ID3':
            return 0
        flags = data[5]
        size = 0
        for byte in data[6:10]:
            size = (size << 7) | (byte & 0x7F)
        size += 10
        if flags & 0x10:
            size += 10
        return size

    @classmethod
    def parse_header(cls, header):
        """
        Decode a 4-byte frame header.

        Returns:
            (frame_length, samples, sample_rate) or None if not a Layer III
            frame header
        """
        if len(header) < 4 or header[0] != 0xFF or (header[1] & 0xE0) != 0xE0:
            return None
        version = (header[1] >> 3) & 0x03
        layer = (header[1] >> 1) & 0x03
        if version == 1 or layer != 1:
            return None
        bitrate_index = (header[2] >> 4) & 0x0F
        rate_index = (header[2] >> 2) & 0x03
        if bitrate_index in (0, 15) or rate_index == 3:
            return None
        padding = (header[2] >> 1) & 0x01
        sample_rate = cls.SAMPLE_RATES[version][rate_index]
        if version == 3:
            bitrate = cls.BITRATES_V1[bitrate_index] * 1000
            return 144 * bitrate // sample_rate + padding, 1152, sample_rate
        bitrate = cls.BITRATES_V2[bitrate_index] * 1000
        return 72 * bitrate // sample_rate + padding, 576, sample_rate

    def _parse(self):
        data = self.path.read_bytes()
        offset = self.id3_size(data)
        while offset + 4 <= len(data):
            frame = self.parse_header(data[offset:offset + 4])
            if frame is None:
                if data[offset:offset + 3] == b'TAG':
                    break
                offset += 1
                continue
            length, samples, sample_rate = frame
            self.fragments.append(Segment(offset, length, samples / sample_rate))
            offset += length

        if not self.fragments:
            raise ValueError(f'{self.path.name} has no MPEG audio frames')
        self.segments = list(self.fragments)

    def consolidate(self, target):
        self.segments = consolidate_segments(self.fragments, target)
        return self.segments

    def rewrite(self):
        """MP3 frames need no fixup"""

    def playlist(self, target, media_name):
        return build_playlist(self.segments, media_name, target)


def consolidate_segments(fragments, target):
    """
    Greedily group fragments into segments of about target seconds.

    A segment is closed on the next keyframe once it is within
    SEGMENT_DURATION_TOLERANCE of the target.

    Returns:
        list[Segment]
    """
    segments = []
    current = None
    for fragment in fragments:
        if (current is not None and fragment.keyframe
                and current.duration >= target - SEGMENT_DURATION_TOLERANCE):
            segments.append(current)
            current = None
        if current is None:
            current = Segment(fragment.offset, fragment.size, fragment.duration, fragment.keyframe)
        else:
            current.size = fragment.end - current.offset
            current.duration += fragment.duration
    if current is not None:
        segments.append(current)
    return segments


def build_playlist(segments, media_name, target, init_size=0):
    """
    Render an HLS v7 VOD playlist addressing byte ranges of one file.

    Args:
        segments: Ordered list of Segment
        media_name: File name of the media, relative to the playlist
        target: Segment target duration, used when there are no segments
        init_size: Length of the MP4 initialization section (ftyp + moov)

    Returns:
        str
    """
    uri = quote(media_name)
    longest = max((segment.duration for segment in segments), default=target)
    lines = [
        '#EXTM3U',
        '#EXT-X-VERSION:7',
        f'#EXT-X-TARGETDURATION:{math.ceil(longest)}',
        '#EXT-X-PLAYLIST-TYPE:VOD',
    ]
    if init_size:
        lines.append(f'#EXT-X-MAP:URI="{uri}",BYTERANGE="{init_size}@0"')
    for segment in segments:
        lines.append(f'#EXTINF:{segment.duration:.6f},')
        lines.append(f'#EXT-X-BYTERANGE:{segment.size}@{segment.offset}')
        lines.append(uri)
    lines.append('#EXT-X-ENDLIST')
    return '\n'.join(lines) + '\n'


def open_segmenter(path):
    """Pick the segmenter for a media file by its extension"""
    if Path(path).suffix.lower() == '.mp3':
        return MP3Segmenter(path)
    return MP4Segmenter(path)


def segment_media(media_path, playlist_path, media_name, target, logger=None):
    """
    Segment an encoded file in place and write its playlist.

    Args:
        media_path: Encoded media file (modified in place)
        playlist_path: Where to write the playlist
        media_name: Published file name of the media
        target: Segment target duration in seconds

    Returns:
        Result carrying the list of Segments or a TranscodeError
    """
    def log(message):
        if logger:
            logger(message)

    try:
        segmenter = open_segmenter(media_path)
        segments = segmenter.consolidate(target)
        segmenter.rewrite()
        Path(playlist_path).write_text(segmenter.playlist(target, media_name), encoding='utf-8')
    except (OSError, ValueError, struct.error) as e:
        return Result.fail(TranscodeError(f'Segmenting failed: {e}'))

    log(f"Segmented into {len(segments)} segments")
    return Result.ok(segments)


@dataclass
class Rendition:
    """One published streaming variant, for the master playlist"""
    variant_key: str
    playlist_name: str
    bandwidth: int
    audio: bool = False
    codecs: str = ''
    width: Optional[int] = None
    height: Optional[int] = None


def build_master_playlist(renditions):
    """
    Render the asset's master playlist from its published streaming variants.

    Audio renditions are grouped as alternate audio for every video stream.
    """
    audio = [r for r in renditions if r.audio]
    video = [r for r in renditions if not r.audio]
    lines = ['#EXTM3U', '#EXT-X-VERSION:7', '#EXT-X-INDEPENDENT-SEGMENTS']

    for index, rendition in enumerate(audio):
        default = 'YES' if index == 0 else 'NO'
        lines.append(
            f'#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="audio",NAME="{rendition.variant_key}",'
            f'AUTOSELECT=YES,DEFAULT={default},URI="{quote(rendition.playlist_name)}"'
        )

    max_audio = max((r.bandwidth for r in audio), default=0)
    for rendition in video:
        attributes = [f'BANDWIDTH={rendition.bandwidth + max_audio}']
        if rendition.codecs:
            attributes.append(f'CODECS="{rendition.codecs}"')
        if rendition.width and rendition.height:
            attributes.append(f'RESOLUTION={rendition.width}x{rendition.height}')
        if audio:
            attributes.append('AUDIO="audio"')
        lines.append(f"#EXT-X-STREAM-INF:{','.join(attributes)}")
        lines.append(quote(rendition.playlist_name))
    return '\n'.join(lines) + '\n'
