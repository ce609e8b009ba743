#!/usr/bin/env python3
"""Interleave an H.264 elementary stream and 16-bit PCM audio into a .str movie.

Every access unit is rewritten on the way in: user-data SEIs are dropped,
each SPS gets HRD parameters so that pic_timing SEIs are legal, and a
pic_timing SEI is placed in front of every slice.
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import soundfile as sf

from assetprep.binutil import BitReader
from assetprep.binutil import BitWriter
from assetprep.binutil import align_up
from assetprep.binutil import insert_emulation_prevention
from assetprep.binutil import strip_emulation_prevention

logger = logging.getLogger(__name__)

STR_MAGIC = b"STR\x00"
STR_HEADER_STRUCT = struct.Struct("<4sIIHHIIII")
FRAME_INDEX_STRUCT = struct.Struct("<II")
FRAME_HEADER_STRUCT = struct.Struct("<IIII")

SAMPLE_RATE = 44100
CHANNELS = 2
SAMPLE_FRAME_BYTES = 4
CONTAINER_MAGICS = (b"RIFF", b"RF64", b"FORM", b"fLaC", b"OggS")

START_CODE = b"\x00\x00\x00\x01"
AU_DELIMITER = START_CODE + b"\x09"
NAL_BOUNDARY_RE = re.compile(rb"\x00\x00[\x00\x01]")

NAL_SLICE = 1
NAL_IDR_SLICE = 5
NAL_SEI = 6
NAL_SPS = 7
SEI_PIC_TIMING = 1
SEI_USER_DATA_UNREGISTERED = 5
MAX_FRAMES_SINCE_IDR = 63

REQUIRED_PROFILE_IDC = 77
REQUIRED_CONSTRAINT_FLAGS = 0x40
REQUIRED_LEVEL_IDC = 21

PIC_TIMING_PREFIX = START_CODE + b"\x06\x01\x08"
PIC_TIMING_SUFFIX = b"\x08\x24\x68\x00\x00\x03\x00\x01\x80"


@dataclass
class MuxState:
    frames_since_idr: int = -1
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class StreamHeader:
    frame_count: int
    width: int
    height: int
    fps_num: int
    fps_den: int
    max_video_au: int
    max_audio_bytes: int


def parse_fps(text: str) -> tuple[int, int]:
    num, slash, den = text.partition("/")
    try:
        fps_num = int(num)
        fps_den = int(den) if slash else 1
    except ValueError:
        raise ValueError(f"Invalid frame rate {text} (must be integer or N/D)") from None
    if fps_num <= 0 or fps_den <= 0:
        raise ValueError(f"Invalid frame rate {text} (must be integer or N/D)")
    return fps_num, fps_den


def find_access_units(data: bytes) -> list[tuple[int, int]]:
    """Return ``(start, end)`` of each access unit, delimited by ``00 00 00 01 09``."""
    starts = []
    pos = data.find(AU_DELIMITER)
    while pos >= 0:
        starts.append(pos)
        pos = data.find(AU_DELIMITER, pos + 1)
    ends = starts[1:] + [len(data)]
    return list(zip(starts, ends))


def split_nals(au: bytes) -> list[tuple[bytes, bytes]]:
    """Split an access unit into ``(start_code, nal)`` pairs.

    A NAL runs up to the next ``00 00 00`` or ``00 00 01``.
    """
    nals = []
    pos = 0
    while pos < len(au):
        i = pos
        while i < len(au) and au[i] == 0:
            i += 1
        if i >= len(au) or au[i] != 1:
            raise ValueError(f"Missing start code at offset 0x{pos:X}")
        match = NAL_BOUNDARY_RE.search(au, i, len(au) - 1)
        end = match.start() if match else len(au)
        if i + 1 >= end:
            raise ValueError(f"Empty NAL unit at offset 0x{pos:X}")
        nals.append((au[pos:i + 1], au[i + 1:end]))
        pos = end
    return nals


def _copy_bits(reader: BitReader, writer: BitWriter, count: int) -> int:
    value = reader.read_bits(count)
    writer.write_bits(value, count)
    return value


def _copy_ue(reader: BitReader, writer: BitWriter) -> int:
    value = reader.read_ue()
    writer.write_ue(value)
    return value


def _copy_hrd(reader: BitReader, writer: BitWriter) -> None:
    cpb_cnt_minus1 = _copy_ue(reader, writer)
    _copy_bits(reader, writer, 4)  # bit_rate_scale
    _copy_bits(reader, writer, 4)  # cpb_size_scale
    for _ in range(cpb_cnt_minus1 + 1):
        _copy_ue(reader, writer)  # bit_rate_value_minus1
        _copy_ue(reader, writer)  # cpb_size_value_minus1
        _copy_bits(reader, writer, 1)  # cbr_flag
    for _ in range(4):
        _copy_bits(reader, writer, 5)  # delay and offset lengths


def write_default_hrd(writer: BitWriter) -> None:
    writer.write_ue(0)  # cpb_cnt_minus1
    writer.write_bits(1, 4)  # bit_rate_scale
    writer.write_bits(3, 4)  # cpb_size_scale
    writer.write_ue(15624)  # bit_rate_value_minus1
    writer.write_ue(15624)  # cpb_size_value_minus1
    writer.write_bits(0, 1)  # cbr_flag
    writer.write_bits(17, 5)  # initial_cpb_removal_delay_length_minus1
    writer.write_bits(6, 5)  # cpb_removal_delay_length_minus1
    writer.write_bits(6, 5)  # dpb_output_delay_length_minus1
    writer.write_bits(24, 5)  # time_offset_length


def rewrite_sps(payload: bytes) -> tuple[bytes, int, int]:
    """Rewrite an SPS payload (without its NAL header byte) to carry HRD parameters.

    Returns the new payload with emulation prevention applied, and the
    cropped picture width and height.
    """
    reader = BitReader(strip_emulation_prevention(payload))
    writer = BitWriter()

    profile_idc = _copy_bits(reader, writer, 8)
    if profile_idc != REQUIRED_PROFILE_IDC:
        raise ValueError(f"SPS: bad profile_idc {profile_idc} (should be {REQUIRED_PROFILE_IDC})")
    constraints = _copy_bits(reader, writer, 8)
    if constraints != REQUIRED_CONSTRAINT_FLAGS:
        raise ValueError(f"SPS: bad constraints 0x{constraints:02X} (should be 0x{REQUIRED_CONSTRAINT_FLAGS:02X})")
    level_idc = _copy_bits(reader, writer, 8)
    if level_idc != REQUIRED_LEVEL_IDC:
        raise ValueError(f"SPS: bad level_idc {level_idc} (should be {REQUIRED_LEVEL_IDC})")

    _copy_ue(reader, writer)  # seq_parameter_set_id
    _copy_ue(reader, writer)  # log2_max_frame_num_minus4
    pic_order_cnt_type = _copy_ue(reader, writer)
    if pic_order_cnt_type == 0:
        _copy_ue(reader, writer)  # log2_max_pic_order_cnt_lsb_minus4
    elif pic_order_cnt_type == 1:
        _copy_bits(reader, writer, 1)  # delta_pic_order_always_zero_flag
        # Signed Exp-Golomb fields share the unsigned bit layout.
        _copy_ue(reader, writer)  # offset_for_non_ref_pic
        _copy_ue(reader, writer)  # offset_for_top_to_bottom_field
        for _ in range(_copy_ue(reader, writer)):
            _copy_ue(reader, writer)  # offset_for_ref_frame
    elif pic_order_cnt_type != 2:
        raise ValueError(f"SPS: bad pic_order_cnt_type {pic_order_cnt_type}")
    _copy_ue(reader, writer)  # num_ref_frames
    _copy_bits(reader, writer, 1)  # gaps_in_frame_num_value_allowed_flag

    width = (_copy_ue(reader, writer) + 1) * 16
    height = (_copy_ue(reader, writer) + 1) * 16
    if not _copy_bits(reader, writer, 1):  # frame_mbs_only_flag
        _copy_bits(reader, writer, 1)  # mb_adaptive_frame_field_flag
    _copy_bits(reader, writer, 1)  # direct_8x8_inference_flag
    if _copy_bits(reader, writer, 1):  # frame_cropping_flag
        width -= _copy_ue(reader, writer) * 2
        width -= _copy_ue(reader, writer) * 2
        height -= _copy_ue(reader, writer) * 2
        height -= _copy_ue(reader, writer) * 2

    if not _copy_bits(reader, writer, 1):
        raise ValueError("SPS: vui parameters missing")
    if _copy_bits(reader, writer, 1):  # aspect_ratio_info_present_flag
        aspect_ratio_idc = _copy_bits(reader, writer, 8)
        if aspect_ratio_idc != 1:
            raise ValueError(f"SPS: bad aspect_ratio_idc {aspect_ratio_idc} (should be 1)")
    if _copy_bits(reader, writer, 1):  # overscan_info_present_flag
        _copy_bits(reader, writer, 1)
    if _copy_bits(reader, writer, 1):  # video_signal_type_present_flag
        _copy_bits(reader, writer, 3)  # video_format
        _copy_bits(reader, writer, 1)  # video_full_range_flag
        if _copy_bits(reader, writer, 1):  # colour_description_present_flag
            _copy_bits(reader, writer, 24)
    if _copy_bits(reader, writer, 1):  # chroma_loc_info_present_flag
        _copy_ue(reader, writer)
        _copy_ue(reader, writer)
    if _copy_bits(reader, writer, 1):  # timing_info_present_flag
        _copy_bits(reader, writer, 32)  # num_units_in_tick
        _copy_bits(reader, writer, 32)  # time_scale
        _copy_bits(reader, writer, 1)  # fixed_frame_rate_flag

    # nal_hrd_parameters, then vcl_hrd_parameters
    saw_hrd = False
    for _ in range(2):
        writer.write_bits(1, 1)
        if reader.read_bits(1):
            saw_hrd = True
            _copy_hrd(reader, writer)
        else:
            write_default_hrd(writer)
    if saw_hrd:
        _copy_bits(reader, writer, 1)  # low_delay_hrd_flag
    else:
        writer.write_bits(0, 1)
    _copy_bits(reader, writer, 1)  # pic_struct_present_flag
    if _copy_bits(reader, writer, 1):  # bitstream_restriction_flag
        _copy_bits(reader, writer, 1)  # motion_vectors_over_pic_boundaries_flag
        for _ in range(6):
            _copy_ue(reader, writer)

    # rbsp_trailing_bits
    if not _copy_bits(reader, writer, 1):
        raise ValueError(f"SPS: stop bit not found at byte 0x{reader.byte_index:X} bit {reader.bit_index}")
    while reader.bit_index != 0:
        if reader.read_bit():
            raise ValueError(f"SPS: trailing bit not zero at byte 0x{reader.byte_index:X} bit {reader.bit_index}")
    if reader.bits_left:
        consumed = reader.byte_index
        total = consumed + reader.bits_left // 8
        raise ValueError(f"SPS parse error: only read {consumed} of {total} bytes")

    if width <= 0 or height <= 0:
        raise ValueError(f"SPS: invalid cropped width/height ({width}x{height})")
    return insert_emulation_prevention(writer.getvalue()), width, height


def pic_timing_sei(frames_since_idr: int) -> bytes:
    if not 0 <= frames_since_idr <= MAX_FRAMES_SINCE_IDR:
        raise ValueError(f"Too many frames since I ({frames_since_idr})")
    return PIC_TIMING_PREFIX + bytes([frames_since_idr << 2]) + PIC_TIMING_SUFFIX


def fix_au(au: bytes, filepos: int, state: MuxState) -> bytes:
    """Rewrite one access unit; ``filepos`` is only used in error messages."""
    if len(au) < 4:
        raise ValueError(f"AU at 0x{filepos:X} too small: {len(au)}")
    if not au.startswith(START_CODE):
        raise ValueError(f"AU at 0x{filepos:X} does not begin with a start code ({au[:3].hex().upper()})")

    out = bytearray()
    saw_pic_timing = False
    pos = filepos
    for start_code, nal in split_nals(au):
        nal_type = nal[0] & 0x1F
        sei_type = nal[1] if len(nal) > 1 else -1
        copy_nal = not (nal_type == NAL_SEI and sei_type == SEI_USER_DATA_UNREGISTERED)

        if nal_type == NAL_SPS:
            try:
                payload, width, height = rewrite_sps(nal[1:])
            except ValueError as exc:
                raise ValueError(f"Failed to process SPS at 0x{pos + len(start_code) + 1:X}: {exc}") from None
            if not state.width:
                state.width, state.height = width, height
            elif (width, height) != (state.width, state.height):
                raise ValueError(
                    f"SPS: image size change ({state.width}x{state.height} -> {width}x{height}) not allowed"
                )
            out += start_code + nal[:1] + payload
            copy_nal = False

        if nal_type in (NAL_SLICE, NAL_IDR_SLICE):
            state.frames_since_idr += 1
            if not saw_pic_timing:
                try:
                    out += pic_timing_sei(state.frames_since_idr)
                except ValueError as exc:
                    raise ValueError(f"{exc} at 0x{pos:X}") from None
            if nal_type == NAL_IDR_SLICE:
                state.frames_since_idr = 0
        elif nal_type == NAL_SEI and sei_type == SEI_PIC_TIMING:
            saw_pic_timing = True

        if copy_nal:
            out += start_code + nal
        pos += len(start_code) + len(nal)
    return bytes(out)


def audio_slice_end(frame: int, fps_num: int, fps_den: int) -> int:
    """First sample after ``frame``: ceil((frame + 1) * 44100 / fps)."""
    return -(-(frame + 1) * SAMPLE_RATE * fps_den // fps_num)


def load_audio(path: Path) -> bytes:
    """Return interleaved little-endian 16-bit stereo samples at 44.1 kHz.

    Files with a recognized container header are decoded with soundfile;
    anything else is taken as raw PCM.
    """
    with path.open("rb") as handle:
        magic = handle.read(4)
    if magic not in CONTAINER_MAGICS:
        return path.read_bytes()

    samples, sample_rate = sf.read(str(path), dtype="int16", always_2d=True)
    if sample_rate != SAMPLE_RATE or samples.shape[1] != CHANNELS:
        raise ValueError(
            f"{path}: audio must be {SAMPLE_RATE} Hz stereo (got {sample_rate} Hz, {samples.shape[1]} channels)"
        )
    return np.ascontiguousarray(samples, dtype="<i2").tobytes(order="C")


def mux_stream(video: bytes, audio: bytes, fps_num: int, fps_den: int = 1) -> bytes:
    access_units = find_access_units(video)
    frame_count = len(access_units)
    state = MuxState()
    frames = bytearray()
    index = []
    data_start = STR_HEADER_STRUCT.size + FRAME_INDEX_STRUCT.size * frame_count
    max_au = 0
    max_pcm = 0
    pcm_pos = 0

    for frame, (start, end) in enumerate(access_units):
        au = fix_au(video[start:end], start, state)
        au_pad = align_up(len(au), 4) - len(au)

        next_pcm = audio_slice_end(frame, fps_num, fps_den)
        pcm_bytes = (next_pcm - pcm_pos) * SAMPLE_FRAME_BYTES
        pcm = audio[pcm_pos * SAMPLE_FRAME_BYTES:next_pcm * SAMPLE_FRAME_BYTES]
        pcm += bytes(pcm_bytes - len(pcm))

        frame_offset = data_start + len(frames)
        frames += FRAME_HEADER_STRUCT.pack(len(au), au_pad, pcm_bytes, 0)
        frames += au + bytes(au_pad) + pcm
        index.append(FRAME_INDEX_STRUCT.pack(frame_offset, data_start + len(frames) - frame_offset))

        max_au = max(max_au, len(au))
        max_pcm = max(max_pcm, pcm_bytes)
        pcm_pos = next_pcm

    logger.debug("muxed %d frames, %dx%d, max AU %d bytes", frame_count, state.width, state.height, max_au)
    header = STR_HEADER_STRUCT.pack(
        STR_MAGIC,
        STR_HEADER_STRUCT.size,
        frame_count,
        state.width,
        state.height,
        fps_num,
        fps_den,
        max_au,
        max_pcm,
    )
    return header + b"".join(index) + bytes(frames)


def read_stream_header(data: bytes) -> StreamHeader:
    if len(data) < STR_HEADER_STRUCT.size:
        raise ValueError("File too short")
    magic, header_size, *fields = STR_HEADER_STRUCT.unpack_from(data, 0)
    if magic != STR_MAGIC:
        raise ValueError("Invalid header signature")
    if header_size != STR_HEADER_STRUCT.size:
        raise ValueError(f"Invalid header size {header_size}")
    return StreamHeader(*fields)


def demux_stream(data: bytes, audio: bool = False) -> bytes:
    """Return the concatenated video (or, with ``audio``, PCM) payload of a .str file."""
    header = read_stream_header(data)
    count = header.frame_count
    if len(data) < STR_HEADER_STRUCT.size + FRAME_INDEX_STRUCT.size * count:
        raise ValueError(f"File too short for {count} frames")

    out = bytearray()
    for frame in range(count):
        offset, _ = FRAME_INDEX_STRUCT.unpack_from(data, STR_HEADER_STRUCT.size + FRAME_INDEX_STRUCT.size * frame)
        if len(data) < offset + FRAME_HEADER_STRUCT.size:
            raise ValueError(f"File truncated at frame {frame}")
        video_len, video_pad, audio_len, _ = FRAME_HEADER_STRUCT.unpack_from(data, offset)
        body = offset + FRAME_HEADER_STRUCT.size
        if len(data) < body + video_len + video_pad + audio_len:
            raise ValueError(f"File truncated in frame {frame}")
        if audio:
            start = body + video_len + video_pad
            out += data[start:start + audio_len]
        else:
            out += data[body:body + video_len]
    return bytes(out)
