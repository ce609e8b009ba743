import pytest

from assetprep.binutil import BitReader
from assetprep.binutil import BitWriter
from assetprep.binutil import align_up
from assetprep.binutil import insert_emulation_prevention
from assetprep.binutil import strip_emulation_prevention
from assetprep.binutil import write_atomic


def test_align_up():
    assert align_up(0, 4) == 0
    assert align_up(1, 4) == 4
    assert align_up(16, 16) == 16
    assert align_up(17, 64) == 64
    assert align_up(5, 1) == 5


def test_emulation_prevention_insert_and_strip():
    assert insert_emulation_prevention(b"\x00\x00\x01") == b"\x00\x00\x03\x01"
    assert insert_emulation_prevention(b"\x00\x00\x04") == b"\x00\x00\x04"
    assert insert_emulation_prevention(b"\x00\x00\x00\x00") == b"\x00\x00\x03\x00\x00"
    assert strip_emulation_prevention(b"\x00\x00\x03\x00\x00") == b"\x00\x00\x00\x00"
    assert strip_emulation_prevention(b"\x12\x00\x00\x03\x02") == b"\x12\x00\x00\x02"

    data = bytes([0, 0, 2, 0, 0, 0, 7, 0, 0, 3, 9])
    assert strip_emulation_prevention(insert_emulation_prevention(data)) == data


def test_bit_writer_exp_golomb_codes():
    writer = BitWriter()
    writer.write_ue(0)  # 1
    writer.write_ue(1)  # 010
    writer.write_ue(2)  # 011
    writer.write_ue(3)  # 00100
    assert not writer.byte_aligned
    assert writer.getvalue() == bytes([0b10100110, 0b01000000])


def test_bit_reader_reads_back_writer_output():
    writer = BitWriter()
    writer.write_bits(77, 8)
    writer.write_ue(15624)
    writer.write_bits(1, 1)
    writer.write_ue(0)
    writer.write_bits(24, 5)

    reader = BitReader(writer.getvalue())
    assert reader.read_bits(8) == 77
    assert reader.read_ue() == 15624
    assert reader.read_bit() == 1
    assert reader.read_ue() == 0
    assert reader.read_bits(5) == 24
    assert reader.bits_left < 8


def test_bit_reader_truncated():
    reader = BitReader(b"\x00")
    with pytest.raises(ValueError):
        reader.read_ue()


def test_bit_writer_rejects_values_that_do_not_fit():
    writer = BitWriter()
    with pytest.raises(ValueError):
        writer.write_bits(16, 4)
    with pytest.raises(ValueError):
        writer.write_ue(-1)


def test_write_atomic_creates_parents(tmp_path):
    target = tmp_path / "a" / "b" / "out.bin"
    write_atomic(target, b"payload")
    assert target.read_bytes() == b"payload"
    assert sorted(p.name for p in target.parent.iterdir()) == ["out.bin"]
