"""
Builders for small synthetic media files used by the segmenter and
orchestrator tests.
"""
import struct

SYNC_SAMPLE_FLAGS = 0x02000000
NON_SYNC_SAMPLE_FLAGS = 0x01010000

# MPEG-1 Layer III, 128 kbps, 44.1 kHz, no padding: 417 byte frames
MP3_FRAME_HEADER = bytes([0xFF, 0xFB, 0x90, 0x00])
MP3_FRAME_LENGTH = 417


def box(box_type, payload=b''):
    return struct.pack('>I4s', 8 + len(payload), box_type) + payload


def full_box(box_type, version, flags, payload=b''):
    return box(box_type, bytes([version]) + flags.to_bytes(3, 'big') + payload)


def init_section(track_id=1, timescale=1000, handler=b'vide'):
    ftyp = box(b'ftyp', b'isom' + struct.pack('>I', 512) + b'isomiso6')
    tkhd = full_box(b'tkhd', 0, 3, struct.pack('>III', 0, 0, track_id) + b'\0' * 68)
    mdhd = full_box(b'mdhd', 0, 0, struct.pack('>IIII', 0, 0, timescale, 0) + b'\0' * 4)
    hdlr = full_box(b'hdlr', 0, 0, struct.pack('>I', 0) + handler + b'\0' * 12 + b'media\0')
    trak = box(b'trak', tkhd + box(b'mdia', mdhd + hdlr))
    trex = full_box(b'trex', 0, 0, struct.pack('>IIIII', track_id, 1, 0, 0, 0))
    moov = box(b'moov', trak + box(b'mvex', trex))
    return ftyp + moov


def fragment(sequence, sample_count, sample_duration, keyframe=True, track_id=1, payload_size=64):
    """One moof + mdat pair with per-sample durations and flags"""
    samples = b''
    for index in range(sample_count):
        if index == 0 and keyframe:
            flags = SYNC_SAMPLE_FLAGS
        else:
            flags = NON_SYNC_SAMPLE_FLAGS
        samples += struct.pack('>II', sample_duration, flags)
    trun = full_box(b'trun', 0, 0x100 | 0x400, struct.pack('>I', sample_count) + samples)
    tfhd = full_box(b'tfhd', 0, 0x020000, struct.pack('>I', track_id))
    tfdt = full_box(b'tfdt', 1, 0, struct.pack('>Q', 0))
    mfhd = full_box(b'mfhd', 0, 0, struct.pack('>I', sequence))
    moof = box(b'moof', mfhd + box(b'traf', tfhd + tfdt + trun))
    return moof + box(b'mdat', b'\0' * payload_size)


def fragmented_mp4(fragment_seconds, keyframes=None, timescale=1000, handler=b'vide',
                   first_sequence=1, with_mfra=False):
    """
    Fragmented MP4 with one fragment per entry of fragment_seconds.

    Each fragment holds one-second samples.
    """
    data = init_section(timescale=timescale, handler=handler)
    for index, seconds in enumerate(fragment_seconds):
        keyframe = True if keyframes is None else keyframes[index]
        data += fragment(first_sequence + index, seconds, timescale, keyframe=keyframe)
    if with_mfra:
        data += box(b'mfra', full_box(b'mfro', 0, 0, struct.pack('>I', 16)))
    return data


def id3_tag(body_size=100):
    size = bytes([
        (body_size >> 21) & 0x7F,
        (body_size >> 14) & 0x7F,
        (body_size >> 7) & 0x7F,
        body_size & 0x7F,
    ])
    return b'ID3' + bytes([4, 0, 0]) + size + b'\0' * body_size


def mp3_frames(count):
    frame = MP3_FRAME_HEADER + b'\0' * (MP3_FRAME_LENGTH - 4)
    return frame * count
