import pytest

from assetprep.binutil import BitWriter
from assetprep.binutil import insert_emulation_prevention

START = b"\x00\x00\x00\x01"
AUD = START + b"\x09\xf0"
USER_DATA_SEI = START + b"\x06\x05\x04abcd\x80"
IDR_SLICE = START + b"\x65\x88\x84\x21\xa0"
P_SLICE = START + b"\x41\x9a\x02\x04"


def write_sps_head(writer, crop_bottom=0):
    writer.write_bits(77, 8)  # profile_idc
    writer.write_bits(0x40, 8)  # constraint flags
    writer.write_bits(21, 8)  # level_idc
    writer.write_ue(0)  # seq_parameter_set_id
    writer.write_ue(0)  # log2_max_frame_num_minus4
    writer.write_ue(2)  # pic_order_cnt_type
    writer.write_ue(1)  # num_ref_frames
    writer.write_bits(0, 1)  # gaps_in_frame_num_value_allowed_flag
    writer.write_ue(29)  # pic_width_in_mbs_minus1
    writer.write_ue(16)  # pic_height_in_map_units_minus1
    writer.write_bits(1, 1)  # frame_mbs_only_flag
    writer.write_bits(1, 1)  # direct_8x8_inference_flag
    if crop_bottom:
        writer.write_bits(1, 1)
        for value in (0, 0, 0, crop_bottom):
            writer.write_ue(value)
    else:
        writer.write_bits(0, 1)
    writer.write_bits(1, 1)  # vui_parameters_present_flag
    writer.write_bits(1, 1)  # aspect_ratio_info_present_flag
    writer.write_bits(1, 8)  # aspect_ratio_idc
    writer.write_bits(0, 1)  # overscan_info_present_flag
    writer.write_bits(0, 1)  # video_signal_type_present_flag
    writer.write_bits(0, 1)  # chroma_loc_info_present_flag
    writer.write_bits(1, 1)  # timing_info_present_flag
    writer.write_bits(1001, 32)
    writer.write_bits(60000, 32)
    writer.write_bits(1, 1)


def write_sps_tail(writer):
    writer.write_bits(0, 1)  # pic_struct_present_flag
    writer.write_bits(0, 1)  # bitstream_restriction_flag
    writer.write_bits(1, 1)  # rbsp_stop_one_bit


def make_sps(crop_bottom=0):
    """SPS payload (no NAL header byte) for a 480x272 main-profile stream without HRD."""
    writer = BitWriter()
    write_sps_head(writer, crop_bottom)
    writer.write_bits(0, 1)  # nal_hrd_parameters_present_flag
    writer.write_bits(0, 1)  # vcl_hrd_parameters_present_flag
    write_sps_tail(writer)
    return insert_emulation_prevention(writer.getvalue())


def make_sps_with_canonical_hrd():
    writer = BitWriter()
    write_sps_head(writer)
    for _ in range(2):
        writer.write_bits(1, 1)
        writer.write_ue(0)
        writer.write_bits(1, 4)
        writer.write_bits(3, 4)
        writer.write_ue(15624)
        writer.write_ue(15624)
        writer.write_bits(0, 1)
        writer.write_bits(17, 5)
        writer.write_bits(6, 5)
        writer.write_bits(6, 5)
        writer.write_bits(24, 5)
    writer.write_bits(0, 1)  # low_delay_hrd_flag
    write_sps_tail(writer)
    return insert_emulation_prevention(writer.getvalue())


@pytest.fixture
def sps_payload():
    return make_sps()


@pytest.fixture
def canonical_sps_payload():
    return make_sps_with_canonical_hrd()


@pytest.fixture
def access_units():
    idr_au = AUD + START + b"\x67" + make_sps() + USER_DATA_SEI + IDR_SLICE
    p_au = AUD + P_SLICE
    return [idr_au, p_au]


@pytest.fixture
def video_stream(access_units):
    return b"".join(access_units)


@pytest.fixture
def cropped_sps_payload():
    return make_sps(crop_bottom=4)
