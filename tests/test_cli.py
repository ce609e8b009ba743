import numpy as np
import pytest
from PIL import Image

from assetprep.cli import build_pkg_main
from assetprep.cli import extract_pkg_main
from assetprep.cli import makefont_main
from assetprep.cli import parse_crop
from assetprep.cli import parse_mipmap_regions
from assetprep.cli import parse_pngtotex_args
from assetprep.cli import parse_scale
from assetprep.cli import pngtotex_main
from assetprep.cli import streamux_main
from assetprep.font import read_font
from assetprep.streamux import read_stream_header
from assetprep.texture import FORMAT_PALETTE8
from assetprep.texture import FORMAT_PSP_RGBA8888_SWIZZLED
from assetprep.texture import FORMAT_PVRTC4_RGBA
from assetprep.texture import FORMAT_RGBA8888
from assetprep.texture import read_tex_header


def write_png(path, width=4, height=4, color=(255, 0, 0, 255)):
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[...] = color
    Image.fromarray(pixels, "RGBA").save(path)
    return path


def test_option_parsers():
    assert parse_crop("1,2+30x40") == (1, 2, 30, 40)
    assert parse_mipmap_regions("0:0:16:16,0x10:0:16:16") == [(0, 0, 16, 16), (16, 0, 16, 16)]
    assert parse_scale("0.5") == 1 << 15
    assert parse_scale("2") == 2 << 16


def test_pngtotex_argument_forms():
    args = parse_pngtotex_args(["-pvrtc4", "-make-square-center", "-mipmaps", "a.png"])
    assert args.target == FORMAT_PVRTC4_RGBA
    assert args.make_square == "center"
    assert args.mipmaps == 99
    args = parse_pngtotex_args(["-mipmaps=2", "-a=10,240", "b.png", "c.png"])
    assert args.mipmaps == 2
    assert args.alpha == (10, 240)
    assert [str(path) for path in args.files] == ["b.png", "c.png"]


@pytest.mark.parametrize(
    "argv",
    [
        ["-a=10,5", "x.png"],
        ["-crop=0,0+0x4", "x.png"],
        ["-scale=0", "x.png"],
        ["-mipmap-regions=1:2:3", "x.png"],
        [],
    ],
)
def test_pngtotex_usage_errors(argv):
    with pytest.raises(SystemExit) as excinfo:
        parse_pngtotex_args(argv)
    assert excinfo.value.code == 2


def test_pngtotex_writes_texture(tmp_path, capsys):
    png = write_png(tmp_path / "img.png")
    pngtotex_main([str(png)])
    assert capsys.readouterr().out == f"wrote {tmp_path / 'img.tex'}\n"

    header = read_tex_header((tmp_path / "img.tex").read_bytes())
    assert header.format == FORMAT_RGBA8888
    assert (header.width, header.height) == (4, 4)
    assert header.mipmaps == 0
    assert header.scale == 1 << 16


def test_pngtotex_options(tmp_path):
    png = write_png(tmp_path / "img.png")
    outdir = tmp_path / "out"
    pngtotex_main(["-8", "-mipmaps", "-opaque-bitmap", f"-outdir={outdir}", str(png)])

    header = read_tex_header((outdir / "img.tex").read_bytes())
    assert header.format == FORMAT_PALETTE8
    assert header.mipmaps == 2
    assert header.opaque_bitmap


def test_pngtotex_psp(tmp_path):
    png = write_png(tmp_path / "img.png")
    pngtotex_main(["-psp", str(png)])

    data = (tmp_path / "img.tex").read_bytes()
    header = read_tex_header(data)
    assert header.format == FORMAT_PSP_RGBA8888_SWIZZLED
    assert (header.width, header.height) == (2, 2)
    assert header.scale == 1 << 15
    assert header.pixels_offset == 64


def test_pngtotex_processing_error(tmp_path):
    png = write_png(tmp_path / "img.png")
    with pytest.raises(SystemExit) as excinfo:
        pngtotex_main(["-crop=2,2+4x4", str(png)])
    assert str(excinfo.value.code).startswith(f"error: {png}:")

    with pytest.raises(SystemExit) as excinfo:
        pngtotex_main([str(tmp_path / "missing.png")])
    assert str(excinfo.value.code).startswith("error:")


def test_makefont(tmp_path, capsys):
    (tmp_path / "font.tex").write_bytes(b"TEXTURE")
    (tmp_path / "chars.txt").write_text("height 10\nbaseline 8\nchar 'a' 0 0 5 6 6 0 5\n")
    output = tmp_path / "out.font"
    makefont_main([f"-texture={tmp_path / 'font.tex'}", f"-charlist={tmp_path / 'chars.txt'}", str(output)])
    assert capsys.readouterr().out == f"wrote {output}\n"

    font = read_font(output.read_bytes())
    assert (font.height, font.baseline) == (10, 8)
    assert [c.ch for c in font.chars] == [ord("a")]
    assert font.texture == b"TEXTURE"


def test_makefont_errors(tmp_path):
    (tmp_path / "font.tex").write_bytes(b"TEXTURE")
    (tmp_path / "chars.txt").write_text("baseline 8\n")
    with pytest.raises(SystemExit) as excinfo:
        makefont_main([f"-texture={tmp_path / 'font.tex'}", f"-charlist={tmp_path / 'chars.txt'}", "out.font"])
    assert 'Missing "height" line' in str(excinfo.value.code)

    with pytest.raises(SystemExit) as excinfo:
        makefont_main(["out.font"])
    assert excinfo.value.code == 2


def test_build_and_extract_package(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "one.txt").write_bytes(b"one" * 100)
    (tmp_path / "src" / "two.bin").write_bytes(b"\x00\x01" * 50)
    (tmp_path / "control.txt").write_text(
        "# assets\n"
        "deflate:text/one.txt = src/one.txt\n"
        "data/%.bin = src/%.bin\n"
    )

    build_pkg_main(["-alignment=8", "-compress-min-ratio=0.1", "control.txt", "out.pkg"])
    assert capsys.readouterr().out == "wrote out.pkg\n"

    extract_pkg_main(["-list", "out.pkg"])
    assert sorted(capsys.readouterr().out.splitlines()) == ["data/two.bin", "text/one.txt"]

    extract_pkg_main(["-list", "-verbose", "out.pkg", "text/*"])
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "Hash      Data size  File size  Filename"
    assert len(lines) == 3
    assert lines[2].endswith("        300  text/one.txt")

    extract_pkg_main(["-outdir=extracted", "out.pkg"])
    assert (tmp_path / "extracted" / "text" / "one.txt").read_bytes() == b"one" * 100
    assert (tmp_path / "extracted" / "data" / "two.bin").read_bytes() == b"\x00\x01" * 50
    capsys.readouterr()

    extract_pkg_main(["-verbose", "-outdir=again", "out.pkg", "**.txt"])
    assert capsys.readouterr().out == "text/one.txt\n"
    assert (tmp_path / "again" / "text" / "one.txt").exists()


def test_extract_pkg_without_matches_fails(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "control.txt").write_text("a.txt\n")
    build_pkg_main(["control.txt", "out.pkg"])

    with pytest.raises(SystemExit) as excinfo:
        extract_pkg_main(["-outdir=x", "out.pkg", "*.dat"])
    assert excinfo.value.code == 1


def test_build_pkg_errors(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "control.txt").write_text("missing.txt\n")

    with pytest.raises(SystemExit) as excinfo:
        build_pkg_main(["-alignment=0", "control.txt", "out.pkg"])
    assert excinfo.value.code == 2

    with pytest.raises(SystemExit) as excinfo:
        build_pkg_main(["control.txt", "out.pkg"])
    assert str(excinfo.value.code).startswith("error:")
    assert not (tmp_path / "out.pkg").exists()


def test_streamux_round_trip(tmp_path, capsysbinary, video_stream):
    (tmp_path / "video.264").write_bytes(video_stream)
    (tmp_path / "audio.pcm").write_bytes(bytes(4 * 100))

    streamux_main([str(tmp_path / "video.264"), str(tmp_path / "audio.pcm"), "30000/1001"])
    movie = capsysbinary.readouterr().out
    header = read_stream_header(movie)
    assert header.frame_count == 2
    assert (header.fps_num, header.fps_den) == (30000, 1001)

    (tmp_path / "movie.str").write_bytes(movie)
    streamux_main(["-da", str(tmp_path / "movie.str")])
    assert capsysbinary.readouterr().out == bytes(2943 * 4)


@pytest.mark.parametrize("argv", [["only-one"], ["-dv", "movie.str", "extra"], ["-dv", "a", "-da", "b"]])
def test_streamux_usage_errors(argv):
    with pytest.raises(SystemExit) as excinfo:
        streamux_main(argv)
    assert excinfo.value.code == 2
