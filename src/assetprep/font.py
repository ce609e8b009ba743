#!/usr/bin/env python3

from __future__ import annotations

import logging
import math
import re
import struct
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from assetprep.binutil import align_up
from assetprep.binutil import write_atomic

logger = logging.getLogger(__name__)

FONT_FILE_MAGIC = b"FONT"
FONT_FILE_VERSION = 1
FONT_HEADER_STRUCT = struct.Struct(">4sBBBxIHHII")
CHARINFO_STRUCT = struct.Struct(">iHHBBbxhh")
TEXTURE_ALIGN = 64
MAX_FILE_SIZE = 0x7FFFFFFF

WHITESPACE = b" \t\v\r\n"
KERN_MIN = -128.0
KERN_MAX = 32767 / 256
CODEPOINT_RE = re.compile(rb"U\+([0-9A-Fa-f]+)(?=[ \t\v\r\n]|$)")


@dataclass
class CharInfo:
    ch: int
    x: int
    y: int
    w: int
    h: int
    ascent: int
    prekern: int
    postkern: int

    def pack(self) -> bytes:
        return CHARINFO_STRUCT.pack(
            self.ch, self.x, self.y, self.w, self.h, self.ascent, self.prekern, self.postkern,
        )


@dataclass
class FontFile:
    height: int = 0
    baseline: int = 0
    chars: list[CharInfo] = field(default_factory=list)
    texture: bytes = b""


def utf8_read(data: bytes, pos: int = 0) -> tuple[int, int]:
    """Decode one codepoint at ``pos``; returns ``(codepoint, next_pos)``.

    An invalid lead or continuation byte yields -1 and skips one byte. At
    the end of the data (or a NUL byte) the result is 0 and ``pos`` does
    not move.
    """
    if pos >= len(data) or data[pos] == 0:
        return 0, pos
    lead = data[pos]
    if lead < 0x80:
        return lead, pos + 1
    if lead < 0xC0:
        return -1, pos + 1
    if lead < 0xE0:
        length, value = 2, lead & 0x1F
    elif lead < 0xF0:
        length, value = 3, lead & 0x0F
    elif lead < 0xF8:
        length, value = 4, lead & 0x07
    elif lead < 0xFC:
        length, value = 5, lead & 0x03
    elif lead < 0xFE:
        length, value = 6, lead & 0x01
    else:
        return -1, pos + 1

    tail = data[pos + 1:pos + length]
    if len(tail) != length - 1 or any(not 0x80 <= byte < 0xC0 for byte in tail):
        return -1, pos + 1
    for byte in tail:
        value = (value << 6) | (byte & 0x3F)
    return value, pos + length


def _strip_comment(line: bytes) -> bytes:
    # Keep the '#' of a quoted "char '#'" literal.
    start = len(line) - len(line.lstrip(WHITESPACE))
    s = start
    if line.startswith(b"char", s) and s + 4 < len(line) and line[s + 4] in WHITESPACE:
        s += 4
        while s < len(line) and line[s] in WHITESPACE:
            s += 1
        if line[s:s + 1] in (b"'", b'"') and line[s + 1:s + 2] == b"#":
            s += 2
    hash_pos = line.find(b"#", s)
    return line if hash_pos < 0 else line[:hash_pos]


def _parse_byte_arg(keyword: str, args: list[bytes], lo: int) -> int:
    if not args:
        raise ValueError(f'Missing argument for keyword "{keyword}"')
    try:
        value = int(args[0])
    except ValueError:
        value = -1
    if len(args) > 1 or not lo <= value <= 255:
        raise ValueError(f'Invalid argument for keyword "{keyword}" (must be an integer {lo}-255)')
    return value


def _parse_character(text: bytes) -> tuple[int, bytes]:
    """Return the codepoint named at the start of ``text`` and the rest of the line."""
    if text[:1] in (b"'", b'"') and len(text) > 1:
        ch, pos = utf8_read(text, 1)
        if text[pos:pos + 1] != text[:1]:
            ch = -1
        return ch, text[pos + 1:]
    match = CODEPOINT_RE.match(text)
    if match:
        codepoint = int(match.group(1), 16)
        if codepoint <= 0x7FFFFFFF:
            return codepoint, text[match.end():]
    return -1, b""


def _fixed_kern(value: float) -> int:
    scaled = abs(value) * 256
    return int(math.copysign(math.floor(scaled + 0.5), value))


def parse_char_line(rest: bytes) -> CharInfo:
    ch, rest = _parse_character(rest.lstrip(WHITESPACE))
    if ch == -1:
        raise ValueError("Invalid character specification, must be 'c' or U+xxxx")

    args = rest.split()
    try:
        x, y, w, h, ascent = (int(arg) for arg in args[:5])
        prekern, postkern = (float(arg) for arg in args[5:7])
    except ValueError:
        raise ValueError("Missing argument(s) in character specification") from None
    if len(args) > 7:
        raise ValueError("Extraneous argument(s) in character specification")

    if not (0 <= x <= 65535 and 0 <= y <= 65535):
        raise ValueError(f"Texture coordinates {x},{y} out of range; must be in [0...65535]")
    if not (0 <= w <= 255 and 0 <= h <= 255):
        raise ValueError(f"Glyph size {w}x{h} out of range; must be in [0...255]")
    if not -128 <= ascent <= 127:
        raise ValueError(f"Ascent {ascent} out of range; must be in [-128...+127]")
    if not KERN_MIN <= prekern <= KERN_MAX:
        raise ValueError(f"Prekern {prekern:g} out of range; must be in [-128...+128)")
    if not KERN_MIN <= postkern <= KERN_MAX:
        raise ValueError(f"Postkern {postkern:g} out of range; must be in [-128...+128)")
    return CharInfo(ch, x, y, w, h, ascent, _fixed_kern(prekern), _fixed_kern(postkern))


def parse_charlist(data: bytes, name: str = "<charlist>") -> FontFile:
    """Parse a glyph manifest, reporting every bad line in one ValueError."""
    font = FontFile()
    have_height = False
    errors = []
    for lineno, line in enumerate(data.splitlines(), start=1):
        line = _strip_comment(line)
        parts = line.split(None, 1)
        if not parts:
            continue
        keyword = parts[0]
        rest = parts[1] if len(parts) > 1 else b""
        try:
            if keyword == b"height":
                font.height = _parse_byte_arg("height", rest.split(), 1)
                have_height = True
            elif keyword == b"baseline":
                font.baseline = _parse_byte_arg("baseline", rest.split(), 0)
            elif keyword == b"char":
                font.chars.append(parse_char_line(rest))
            else:
                raise ValueError(f'Invalid keyword "{keyword.decode("utf-8", "replace")}"')
        except ValueError as exc:
            errors.append(f"{name}:{lineno}: {exc}")

    if not have_height:
        errors.append(f'{name}: Missing "height" line')
    elif font.baseline > font.height:
        errors.append(f"{name}: Baseline cannot be greater than line height")
    if errors:
        raise ValueError("\n".join(errors))
    logger.debug("%s: %d characters, height %d, baseline %d", name, len(font.chars), font.height, font.baseline)
    return font


def read_charlist(path: Path) -> FontFile:
    return parse_charlist(path.read_bytes(), name=str(path))


def encode_font(font: FontFile) -> bytes:
    if len(font.chars) > 0xFFFF:
        raise ValueError(f"Too many characters ({len(font.chars)}, max 65535)")
    datasize = FONT_HEADER_STRUCT.size + CHARINFO_STRUCT.size * len(font.chars)
    texture_offset = align_up(datasize, TEXTURE_ALIGN)
    if texture_offset + len(font.texture) > MAX_FILE_SIZE:
        raise ValueError(f"Font file too large ({texture_offset + len(font.texture)} > {MAX_FILE_SIZE})")

    header = FONT_HEADER_STRUCT.pack(
        FONT_FILE_MAGIC,
        FONT_FILE_VERSION,
        font.height,
        font.baseline,
        FONT_HEADER_STRUCT.size,
        len(font.chars),
        CHARINFO_STRUCT.size,
        texture_offset,
        len(font.texture),
    )
    body = header + b"".join(info.pack() for info in font.chars)
    return body + bytes(texture_offset - datasize) + font.texture


def write_font(font: FontFile, path: Path) -> None:
    write_atomic(path, encode_font(font))


def read_font(data: bytes) -> FontFile:
    if len(data) < FONT_HEADER_STRUCT.size:
        raise ValueError(f"File too small for font header ({len(data)} < {FONT_HEADER_STRUCT.size})")
    (
        magic,
        version,
        height,
        baseline,
        charinfo_offset,
        charinfo_count,
        charinfo_size,
        texture_offset,
        texture_size,
    ) = FONT_HEADER_STRUCT.unpack_from(data, 0)
    if magic != FONT_FILE_MAGIC:
        raise ValueError(f"Bad font magic: {magic!r}")
    if version != FONT_FILE_VERSION:
        raise ValueError(f"Unsupported font version {version}")
    if charinfo_size != CHARINFO_STRUCT.size:
        raise ValueError(f"Character info size is wrong ({charinfo_size}, should be {CHARINFO_STRUCT.size})")
    if charinfo_offset + charinfo_count * charinfo_size > len(data):
        raise ValueError("Character info extends past end of file")
    if texture_offset + texture_size > len(data):
        raise ValueError("Texture data extends past end of file")

    chars = [
        CharInfo(*fields)
        for fields in CHARINFO_STRUCT.iter_unpack(
            data[charinfo_offset:charinfo_offset + charinfo_count * charinfo_size]
        )
    ]
    return FontFile(
        height=height,
        baseline=baseline,
        chars=chars,
        texture=bytes(data[texture_offset:texture_offset + texture_size]),
    )
