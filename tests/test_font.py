import pytest

from assetprep.font import CharInfo
from assetprep.font import FontFile
from assetprep.font import encode_font
from assetprep.font import parse_charlist
from assetprep.font import read_font
from assetprep.font import utf8_read

MANIFEST = """\
# test font
height 16
baseline 12

char 'A' 0 0 8 12 12 0 8.5
char '#' 8 0 8 12 12 -1 8   # the hash sign
char U+20AC 16 0 8 12 12 0.25 8
char "é" 24 0 8 12 -3 0 -0.5
""".encode("utf-8")


def test_utf8_read():
    assert utf8_read(b"A") == (65, 1)
    assert utf8_read(b"") == (0, 0)
    assert utf8_read(b"\x00abc") == (0, 0)
    assert utf8_read("é".encode()) == (0xE9, 2)
    assert utf8_read("€".encode()) == (0x20AC, 3)
    assert utf8_read("\U0001F600".encode()) == (0x1F600, 4)
    assert utf8_read(b"x\xe2\x82\xac", 1) == (0x20AC, 4)


def test_utf8_read_invalid_sequences():
    assert utf8_read(b"\x80") == (-1, 1)
    assert utf8_read(b"\xe2\x82") == (-1, 1)
    assert utf8_read(b"\xc3A") == (-1, 1)
    assert utf8_read(b"\xff") == (-1, 1)


def test_parse_charlist():
    font = parse_charlist(MANIFEST, "font.txt")
    assert (font.height, font.baseline) == (16, 12)
    assert [c.ch for c in font.chars] == [ord("A"), ord("#"), 0x20AC, 0xE9]
    assert font.chars[0] == CharInfo(ord("A"), 0, 0, 8, 12, 12, 0, 2176)
    assert font.chars[1].prekern == -256
    assert font.chars[2].prekern == 64
    assert font.chars[3].ascent == -3
    assert font.chars[3].postkern == -128


def test_parse_charlist_reports_every_bad_line():
    manifest = b"\n".join([
        b"height 300",
        b"char A 0 0 0 0 0 0 0",
        b"bogus 1",
        b"char 'B' 0 0 8 8 200 0 0",
        b"char 'C' 0 0 8 8 0 0 200",
        b"char 'D' 0 70000 8 8 0 0 0",
        b"char 'E' 0 0 300 8 0 0 0",
        b"char 'F' 0 0 8 8 0 -129 0",
    ])
    with pytest.raises(ValueError) as excinfo:
        parse_charlist(manifest, "bad.txt")
    message = str(excinfo.value)
    assert 'bad.txt:1: Invalid argument for keyword "height"' in message
    assert "bad.txt:2: Invalid character specification" in message
    assert 'bad.txt:3: Invalid keyword "bogus"' in message
    assert "bad.txt:4: Ascent 200 out of range" in message
    assert "bad.txt:5: Postkern 200 out of range" in message
    assert "bad.txt:6: Texture coordinates 0,70000 out of range" in message
    assert "bad.txt:7: Glyph size 300x8 out of range" in message
    assert "bad.txt:8: Prekern -129 out of range" in message
    assert 'bad.txt: Missing "height" line' in message


def test_parse_charlist_argument_count():
    with pytest.raises(ValueError, match="Missing argument"):
        parse_charlist(b"height 8\nchar 'A' 0 0 8 8 0 0\n")
    with pytest.raises(ValueError, match="Extraneous argument"):
        parse_charlist(b"height 8\nchar 'A' 0 0 8 8 0 0 0 9\n")


def test_baseline_above_height():
    with pytest.raises(ValueError, match="Baseline cannot be greater than line height"):
        parse_charlist(b"height 8\nbaseline 9\n")


def test_font_file_layout_and_round_trip():
    font = parse_charlist(MANIFEST)
    font.texture = b"texdata"
    data = encode_font(font)

    assert data[:4] == b"FONT"
    assert data[4:7] == bytes([1, 16, 12])
    # 24-byte header + 4 * 16-byte records, padded to 64.
    assert len(data) == 128 + len(b"texdata")
    assert data[88:128] == bytes(40)
    assert data[128:] == b"texdata"

    decoded = read_font(data)
    assert decoded == font
    assert encode_font(decoded) == data


def test_empty_font():
    data = encode_font(FontFile(height=8, baseline=8))
    assert len(data) == 64
    assert read_font(data).chars == []


def test_read_font_rejects_bad_magic():
    with pytest.raises(ValueError, match="Bad font magic"):
        read_font(b"TONF" + bytes(60))
