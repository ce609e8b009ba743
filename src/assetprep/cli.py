#!/usr/bin/env python3

from __future__ import annotations

import argparse
import logging
import re
import sys
from pathlib import Path

from assetprep.font import read_charlist
from assetprep.font import write_font
from assetprep.image import load_png
from assetprep.pkg import PackageOptions
from assetprep.pkg import PackageReader
from assetprep.pkg import build_package
from assetprep.pkg import extract_package
from assetprep.pkg import format_listing
from assetprep.pkg import read_control_file
from assetprep.pkg import select_entries
from assetprep.streamux import demux_stream
from assetprep.streamux import load_audio
from assetprep.streamux import mux_stream
from assetprep.streamux import parse_fps
from assetprep.texcompress import DEFAULT_PVRTEXTOOL
from assetprep.texcompress import DxtCompressor
from assetprep.texcompress import PvrtcCompressor
from assetprep.texture import FORMAT_A8
from assetprep.texture import FORMAT_DXT1
from assetprep.texture import FORMAT_DXT3
from assetprep.texture import FORMAT_DXT5
from assetprep.texture import FORMAT_PALETTE8
from assetprep.texture import FORMAT_PVRTC2_RGBA
from assetprep.texture import FORMAT_PVRTC4_RGBA
from assetprep.texture import FORMAT_RGBA8888
from assetprep.texture import UNLIMITED_MIPMAPS
from assetprep.texture import TextureOptions
from assetprep.texture import convert_texture
from assetprep.texture import output_path_for
from assetprep.texture import write_tex

CROP_RE = re.compile(r"^(\d+),(\d+)\+(\d+)x(\d+)$")
SIZE_RE = re.compile(r"^(\d+)x(\d+)$")
FIXED_ONE = 1 << 16
MAX_FONT_TEXTURE_SIZE = 0x7FFFFFFF


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Option value parsers
# ---------------------------------------------------------------------------


def parse_alpha_thresholds(text: str) -> tuple[int, int]:
    lo, sep, hi = text.partition(",")
    try:
        lo_value = int(lo)
        hi_value = int(hi)
    except ValueError:
        raise argparse.ArgumentTypeError("expected LO,HI") from None
    if not sep or not (0 <= lo_value <= 255 and 0 <= hi_value <= 255):
        raise argparse.ArgumentTypeError("expected LO,HI with values 0-255")
    if lo_value >= hi_value:
        raise argparse.ArgumentTypeError("LO >= HI")
    return lo_value, hi_value


def parse_crop(text: str) -> tuple[int, int, int, int]:
    match = CROP_RE.match(text)
    if not match:
        raise argparse.ArgumentTypeError("expected X,Y+WxH")
    x, y, w, h = (int(value) for value in match.groups())
    if not w or not h:
        raise argparse.ArgumentTypeError("width and height must be nonzero")
    return x, y, w, h


def parse_size(text: str) -> tuple[int, int]:
    match = SIZE_RE.match(text)
    if not match:
        raise argparse.ArgumentTypeError("expected WxH")
    w, h = (int(value) for value in match.groups())
    if not w or not h:
        raise argparse.ArgumentTypeError("width and height must be nonzero")
    return w, h


def parse_mipmap_regions(text: str) -> list[tuple[int, int, int, int]]:
    regions = []
    for item in text.split(","):
        parts = item.split(":")
        try:
            if len(parts) != 4:
                raise ValueError(item)
            x, y, w, h = (int(part, 0) for part in parts)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid mipmap region: {item}") from None
        if min(x, y, w, h) < 0:
            raise argparse.ArgumentTypeError(f"Invalid mipmap region: {item}")
        regions.append((x, y, w, h))
    return regions


def parse_scale(text: str) -> int:
    try:
        scale = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError("expected a number") from None
    fixed = scale * FIXED_ONE
    if not (1 / FIXED_ONE <= scale < FIXED_ONE) or fixed != int(fixed):
        raise argparse.ArgumentTypeError("must be a positive multiple of 1/65536 less than 65536")
    return int(fixed)


def non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError("expected a non-negative integer") from None
    if value < 0:
        raise argparse.ArgumentTypeError("expected a non-negative integer")
    return value


def byte_count(text: str) -> int:
    try:
        value = int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError("expected a byte count") from None
    if value < 0:
        raise argparse.ArgumentTypeError("expected a byte count")
    return value


def positive_int(text: str) -> int:
    try:
        value = int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid alignment value") from None
    if value <= 0:
        raise argparse.ArgumentTypeError("Invalid alignment value")
    return value


def compression_ratio(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError("Invalid compression ratio") from None
    if value > 1.0:
        raise argparse.ArgumentTypeError("Invalid compression ratio")
    return value


# ---------------------------------------------------------------------------
# pngtotex
# ---------------------------------------------------------------------------


def parse_pngtotex_args(argv: list[str]) -> argparse.Namespace:
    # A bare -mipmaps means no limit; -mipmaps=N sets one.
    argv = [f"-mipmaps={UNLIMITED_MIPMAPS}" if arg == "-mipmaps" else arg for arg in argv]

    parser = argparse.ArgumentParser(
        prog="pngtotex",
        description="Convert PNG images to .tex textures",
        allow_abbrev=False,
    )
    parser.set_defaults(target=FORMAT_RGBA8888)
    parser.add_argument("-8", dest="target", action="store_const", const=FORMAT_PALETTE8, help="8bpp indexed output")
    parser.add_argument("-alpha", dest="target", action="store_const", const=FORMAT_A8, help="alpha-only output")
    parser.add_argument("-a", dest="alpha", type=parse_alpha_thresholds, default=(0, 255), metavar="LO,HI",
                        help="alpha thresholds for compressed formats")
    parser.add_argument("-bgra", action="store_true", help="write 32bpp data in BGRA order")
    parser.add_argument("-crop", type=parse_crop, metavar="X,Y+WxH")
    parser.add_argument("-dxt1", dest="target", action="store_const", const=FORMAT_DXT1)
    parser.add_argument("-dxt3", dest="target", action="store_const", const=FORMAT_DXT3)
    parser.add_argument("-dxt5", dest="target", action="store_const", const=FORMAT_DXT5)
    parser.add_argument("-hq", action="store_true", help="highest-quality PVRTC compression")
    parser.add_argument("-make-square", dest="make_square", action="store_const", const="corner")
    parser.add_argument("-make-square-center", dest="make_square", action="store_const", const="center")
    parser.add_argument("-mipmaps", type=non_negative_int, default=0, metavar="N")
    parser.add_argument("-mipmap-regions", type=parse_mipmap_regions, default=[], metavar="x:y:w:h[,...]")
    parser.add_argument("-mipmaps-transparent-at", type=non_negative_int, default=0, metavar="N")
    parser.add_argument("-opaque-bitmap", action="store_true")
    parser.add_argument("-outdir", type=Path)
    parser.add_argument("-psp", action="store_true", help="PSP output: half size, alignment and swizzling")
    parser.add_argument("-pvrtc2", dest="target", action="store_const", const=FORMAT_PVRTC2_RGBA)
    parser.add_argument("-pvrtc4", dest="target", action="store_const", const=FORMAT_PVRTC4_RGBA)
    parser.add_argument("-pvrtextool", default=DEFAULT_PVRTEXTOOL, metavar="PATH")
    parser.add_argument("-resize", type=parse_size, metavar="WxH")
    parser.add_argument("-scale", type=parse_scale, metavar="N")
    parser.add_argument("-verbose", action="store_true")
    parser.add_argument("files", nargs="+", type=Path, metavar="file.png")
    return parser.parse_args(argv)


def texture_options(args: argparse.Namespace) -> TextureOptions:
    return TextureOptions(
        target=args.target,
        alpha_lo=args.alpha[0],
        alpha_hi=args.alpha[1],
        bgra=args.bgra,
        crop=args.crop,
        resize=args.resize,
        make_square=args.make_square is not None,
        make_square_center=args.make_square == "center",
        mipmaps=args.mipmaps,
        mipmap_regions=args.mipmap_regions,
        mipmaps_transparent_at=args.mipmaps_transparent_at,
        opaque_bitmap=args.opaque_bitmap,
        psp=args.psp,
        scale=args.scale,
    )


def pngtotex_main(argv: list[str] | None = None) -> None:
    args = parse_pngtotex_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.verbose)
    options = texture_options(args)
    dxt = DxtCompressor(verbose=args.verbose)
    pvrtc = PvrtcCompressor(program=args.pvrtextool, high_quality=args.hq, verbose=args.verbose)

    for path in args.files:
        try:
            texture = convert_texture(load_png(path), options, dxt=dxt, pvrtc=pvrtc, name=str(path))
            output = output_path_for(path, args.outdir)
            write_tex(texture, output, scale=options.scale_fixed, psp=options.psp)
            print(f"wrote {output}")
        except (OSError, RuntimeError, ValueError) as exc:
            raise SystemExit(f"error: {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# makefont
# ---------------------------------------------------------------------------


def makefont_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="makefont",
        description="Combine a font texture and a character list into a .font file",
        allow_abbrev=False,
    )
    parser.add_argument("-texture", type=Path, required=True, metavar="texture.tex")
    parser.add_argument("-charlist", type=Path, required=True, metavar="charlist.txt")
    parser.add_argument("-verbose", action="store_true")
    parser.add_argument("outfile", type=Path, metavar="outfile.font")
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.verbose)

    try:
        texture = args.texture.read_bytes()
        if len(texture) > MAX_FONT_TEXTURE_SIZE:
            raise ValueError(f"{args.texture}: File too large")
        font = read_charlist(args.charlist)
        font.texture = texture
        write_font(font, args.outfile)
        print(f"wrote {args.outfile}")
    except (OSError, ValueError) as exc:
        raise SystemExit(f"error: {exc}") from exc


# ---------------------------------------------------------------------------
# build-pkg / extract-pkg
# ---------------------------------------------------------------------------


def build_pkg_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="build-pkg",
        description="Build a PKG archive from a control file",
        allow_abbrev=False,
    )
    parser.add_argument("-alignment", type=positive_int, default=4, metavar="N",
                        help="align each file's data to a multiple of N bytes (default 4)")
    parser.add_argument("-compress-min-size", type=byte_count, default=0, metavar="N",
                        help="store files smaller than N bytes uncompressed")
    parser.add_argument("-compress-min-ratio", type=compression_ratio, default=0.0, metavar="F",
                        help="store files compressing by less than F uncompressed")
    parser.add_argument("-verbose", action="store_true")
    parser.add_argument("control", type=Path, metavar="control-file")
    parser.add_argument("output", type=Path, metavar="package-file")
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.verbose)

    try:
        options = PackageOptions(
            alignment=args.alignment,
            compress_min_size=args.compress_min_size,
            compress_min_ratio=args.compress_min_ratio,
        )
        build_package(read_control_file(args.control), args.output, options)
        print(f"wrote {args.output}")
    except (OSError, ValueError) as exc:
        raise SystemExit(f"error: {exc}") from exc


def extract_pkg_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="extract-pkg",
        description="List or extract files from a PKG archive",
        epilog=(
            "files-to-extract may use ? (one character), * (any characters within a "
            "directory) and ** (any characters across directories)"
        ),
        allow_abbrev=False,
    )
    parser.add_argument("-list", action="store_true", help="list entries instead of extracting")
    parser.add_argument("-outdir", type=Path, metavar="PATH")
    parser.add_argument("-verbose", action="store_true",
                        help="list files as they are extracted, or show details with -list")
    parser.add_argument("package", type=Path, metavar="input-file")
    parser.add_argument("patterns", nargs="*", metavar="files-to-extract")
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(False)

    try:
        reader = PackageReader(args.package)
        entries = select_entries(reader, args.patterns)
        if args.list:
            for line in format_listing(entries, verbose=args.verbose):
                print(line)
            failed = []
        else:
            _, failed = extract_package(
                reader, entries, outdir=args.outdir, report=print if args.verbose else None
            )
    except (OSError, ValueError) as exc:
        raise SystemExit(f"error: {exc}") from exc

    status = 1 if failed else 0
    if args.patterns and not entries:
        logging.getLogger(__name__).warning("no files matched specified patterns")
        status = 1
    if status:
        raise SystemExit(status)


# ---------------------------------------------------------------------------
# streamux
# ---------------------------------------------------------------------------


def streamux_main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="streamux",
        usage=(
            "streamux video.264 audio.pcm framerate >movie.str\n"
            "   or: streamux -dv movie.str >video.264\n"
            "   or: streamux -da movie.str >audio.pcm"
        ),
        allow_abbrev=False,
    )
    demux = parser.add_mutually_exclusive_group()
    demux.add_argument("-dv", type=Path, metavar="movie.str", help="extract the video stream")
    demux.add_argument("-da", type=Path, metavar="movie.str", help="extract the audio stream")
    parser.add_argument("-verbose", action="store_true")
    parser.add_argument("inputs", nargs="*")
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    demuxing = args.dv is not None or args.da is not None
    if demuxing and args.inputs:
        parser.error("-dv and -da take no other arguments")
    if not demuxing and len(args.inputs) != 3:
        parser.error("expected video, audio and framerate")
    setup_logging(args.verbose)

    try:
        if demuxing:
            path = args.dv if args.dv is not None else args.da
            data = demux_stream(path.read_bytes(), audio=args.da is not None)
        else:
            video_path, audio_path, framerate = args.inputs
            fps_num, fps_den = parse_fps(framerate)
            data = mux_stream(Path(video_path).read_bytes(), load_audio(Path(audio_path)), fps_num, fps_den)
    except (OSError, ValueError) as exc:
        raise SystemExit(f"error: {exc}") from exc

    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
