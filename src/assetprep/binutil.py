#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path


def align_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def strip_emulation_prevention(data: bytes) -> bytes:
    """Remove the 03 from every 00 00 03 sequence."""
    out = bytearray()
    i = 0
    while i < len(data):
        if i + 2 < len(data) and data[i] == 0 and data[i + 1] == 0 and data[i + 2] == 3:
            out += b"\x00\x00"
            i += 3
        else:
            out.append(data[i])
            i += 1
    return bytes(out)


def insert_emulation_prevention(data: bytes) -> bytes:
    """Insert 03 wherever 00 00 xx (xx < 4) would otherwise appear."""
    out = bytearray()
    zeros = 0
    for byte in data:
        if zeros >= 2 and byte < 4:
            out.append(3)
            zeros = 0
        out.append(byte)
        zeros = zeros + 1 if byte == 0 else 0
    return bytes(out)


class BitReader:
    """MSB-first bit cursor over a byte string."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self.byte_index = 0
        self.bit_index = 0

    @property
    def bits_left(self) -> int:
        return (len(self._data) - self.byte_index) * 8 - self.bit_index

    def read_bit(self) -> int:
        if self.byte_index >= len(self._data):
            raise ValueError("Bitstream truncated")
        bit = (self._data[self.byte_index] >> (7 - self.bit_index)) & 1
        self.bit_index += 1
        if self.bit_index == 8:
            self.bit_index = 0
            self.byte_index += 1
        return bit

    def read_bits(self, count: int) -> int:
        value = 0
        for _ in range(count):
            value = (value << 1) | self.read_bit()
        return value

    def read_ue(self) -> int:
        leading = 0
        while self.read_bit() == 0:
            leading += 1
            if leading > 31:
                raise ValueError("Exp-Golomb code too long")
        return ((1 << leading) - 1) + self.read_bits(leading)


class BitWriter:
    def __init__(self) -> None:
        self._bytes = bytearray()
        self._current = 0
        self._count = 0

    def write_bit(self, bit: int) -> None:
        self._current = (self._current << 1) | (bit & 1)
        self._count += 1
        if self._count == 8:
            self._bytes.append(self._current)
            self._current = 0
            self._count = 0

    def write_bits(self, value: int, count: int) -> None:
        if value < 0 or value >= (1 << count):
            raise ValueError(f"Value {value} does not fit in {count} bits")
        for shift in range(count - 1, -1, -1):
            self.write_bit((value >> shift) & 1)

    def write_ue(self, value: int) -> None:
        if value < 0:
            raise ValueError(f"Cannot Exp-Golomb encode negative value {value}")
        coded = value + 1
        length = coded.bit_length() - 1
        self.write_bits(0, length)
        self.write_bits(coded, length + 1)

    @property
    def byte_aligned(self) -> bool:
        return self._count == 0

    def getvalue(self) -> bytes:
        """Return the written bytes, zero-padding a partial final byte."""
        out = bytes(self._bytes)
        if self._count:
            out += bytes([self._current << (8 - self._count)])
        return out
