#!/usr/bin/env python3

from __future__ import annotations

import logging
import os
import struct
import subprocess
import tempfile
from pathlib import Path

import numpy as np
from PIL import Image

from assetprep.image import colordiff_sq_array
from assetprep.image import morton_index

logger = logging.getLogger(__name__)

DEFAULT_DXTCOMP = "dxtcomp"
DEFAULT_PVRTEXTOOL = "PVRTexToolCLI"
SCRATCH_PREFIX = "pngtotex"

ORTHOGONAL_WEIGHT = 10
DIAGONAL_WEIGHT = 7
NEIGHBOR_OFFSETS = (
    (-1, -1, DIAGONAL_WEIGHT),
    (-1, 0, ORTHOGONAL_WEIGHT),
    (-1, 1, DIAGONAL_WEIGHT),
    (0, -1, ORTHOGONAL_WEIGHT),
    (0, 1, ORTHOGONAL_WEIGHT),
    (1, -1, DIAGONAL_WEIGHT),
    (1, 0, ORTHOGONAL_WEIGHT),
    (1, 1, DIAGONAL_WEIGHT),
)

PVR3_MAGIC = b"PVR\x03"
PVR3_HEADER_SIZE = 52
PVR3_METADATA_OFFSET = 48
U32_LE = struct.Struct("<I")


def spread_border(pixels: np.ndarray, max_iterations: int | None = None) -> np.ndarray:
    """Bleed the color of non-transparent pixels into neighboring transparent ones.

    Each pass fills every fully transparent pixel that touches a pixel with
    nonzero alpha, using the neighbor's alpha times 10 (orthogonal) or 7
    (diagonal) as weight. Filled pixels count as alpha 1 from the next pass
    on. The alpha plane of the result is identical to the input's.
    """
    work = pixels.astype(np.int64)
    height, width = work.shape[:2]
    saved_alpha = pixels[..., 3].copy()
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        iterations += 1
        padded = np.zeros((height + 2, width + 2, 4), dtype=np.int64)
        padded[1:-1, 1:-1] = work
        totals = np.zeros((height, width, 3), dtype=np.int64)
        weights = np.zeros((height, width), dtype=np.int64)
        for dy, dx, factor in NEIGHBOR_OFFSETS:
            neighbor = padded[1 + dy:1 + dy + height, 1 + dx:1 + dx + width]
            weight = neighbor[..., 3] * factor
            totals += neighbor[..., :3] * weight[..., None]
            weights += weight
        fill = (work[..., 3] == 0) & (weights > 0)
        if not fill.any():
            break
        w = weights[fill][:, None]
        work[fill, :3] = (totals[fill] + w // 2) // w
        work[fill, 3] = 1
    out = work.astype(np.uint8)
    out[..., 3] = saved_alpha
    return out


def tile_to(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Repeat an image to fill at least width x height, cropping to exactly that size."""
    src_h, src_w = pixels.shape[:2]
    if src_w == width and src_h == height:
        return pixels.copy()
    reps_y = -(-height // src_h)
    reps_x = -(-width // src_w)
    return np.tile(pixels, (reps_y, reps_x, 1))[:height, :width].copy()


def dxt_block_size(width: int, height: int) -> tuple[int, int]:
    return max(width, 4), max(height, 4)


def pvrtc_block_size(width: int, height: int, bpp: int) -> tuple[int, int]:
    return max(width, 32 // bpp), max(height, 8)


def prepare_dxt_input(pixels: np.ndarray, dxt_type: int) -> np.ndarray:
    """Return the BGRA buffer handed to the DXT compressor for one level."""
    height, width = pixels.shape[:2]
    dxt_w, dxt_h = dxt_block_size(width, height)
    padded = dxt_w != width or dxt_h != height
    work = tile_to(pixels, dxt_w, dxt_h)
    if dxt_type == 1:
        if not padded:
            work = spread_border(work)
        work[..., 3] = 255
    return np.ascontiguousarray(work[..., [2, 1, 0, 3]])


def prepare_pvrtc_input(pixels: np.ndarray, bpp: int, alpha: bool) -> np.ndarray:
    """Return the RGBA (or RGB when opaque) buffer handed to the PVRTC compressor."""
    height, width = pixels.shape[:2]
    pvr_w, pvr_h = pvrtc_block_size(width, height, bpp)
    padded = pvr_w != width or pvr_h != height
    work = tile_to(pixels, pvr_w, pvr_h)
    if alpha and not padded:
        work = spread_border(work)
    if not alpha:
        work = work[..., :3]
    return np.ascontiguousarray(work)


def block_data_to_colors(words: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Decode the two colors stored in PVRTC block color words, as RGBA arrays."""
    words = np.asarray(words, dtype=np.int64)
    color_a = words & 0xFFFE
    color_b = (words >> 16) & 0xFFFF

    def expand(c: np.ndarray, opaque_blue: np.ndarray, blue: np.ndarray) -> np.ndarray:
        opaque = (c & 0x8000) != 0
        out = np.empty(c.shape + (4,), dtype=np.int64)
        out[..., 0] = np.where(
            opaque,
            (c >> 10 & 0x1F) * 33 // 4,
            ((c >> 8 & 0xF) << 1 | (c >> 11 & 1)) * 33 // 4,
        )
        out[..., 1] = np.where(
            opaque,
            (c >> 5 & 0x1F) * 33 // 4,
            ((c >> 4 & 0xF) << 1 | (c >> 7 & 1)) * 33 // 4,
        )
        out[..., 2] = np.where(opaque, opaque_blue * 33 // 4, blue * 33 // 4)
        out[..., 3] = np.where(opaque, 0xFF, ((c >> 12 & 0x7) << 1) * 17)
        return out

    a = expand(
        color_a,
        (color_a >> 1 & 0x0F) << 1 | (color_a >> 4 & 1),
        (color_a >> 1 & 0x7) << 2 | (color_a >> 2 & 3),
    )
    b = expand(
        color_b,
        color_b & 0x1F,
        (color_b & 0xF) << 1 | (color_b >> 3 & 1),
    )
    return a, b


def fix_pvrtc4_alpha(original: np.ndarray, compressed: bytes, width: int, height: int) -> bytes:
    """Refit PVRTC4 modulation codes against the source pixels with the alpha-aware metric.

    Blocks holding a transparent source pixel that no candidate color can
    represent are switched to punch-through mode. Only square textures of
    at least 4x4 are supported.
    """
    if width != height or width < 4:
        raise ValueError(f"PVRTC4 alpha fixup needs a square texture of at least 4x4, got {width}x{height}")
    data = bytearray(compressed)
    blocks_x = width // 4
    blocks_y = height // 4
    addresses = np.array(
        [[8 * morton_index(by, bx, blocks_y, blocks_x) for bx in range(blocks_x)] for by in range(blocks_y)],
        dtype=np.int64,
    )
    raw = np.frombuffer(bytes(data), dtype=np.uint8)
    words = (
        raw[addresses + 4].astype(np.int64)
        | raw[addresses + 5].astype(np.int64) << 8
        | raw[addresses + 6].astype(np.int64) << 16
        | raw[addresses + 7].astype(np.int64) << 24
    )
    color_a, color_b = block_data_to_colors(words)
    modes = words & 1

    # Per-pixel bilinear weights over the four nearest block centers.
    py = np.arange(height)
    px = np.arange(width)
    yy = py % 4
    xx = px % 4
    yfrac = (yy + 2) % 4
    xfrac = (xx + 2) % 4
    row0 = (py // 4 - 1 + (yy >= 2)) % blocks_y
    row1 = (row0 + 1) % blocks_y
    col0 = (px // 4 - 1 + (xx >= 2)) % blocks_x
    col1 = (col0 + 1) % blocks_x
    w00 = ((4 - yfrac)[:, None] * (4 - xfrac)[None, :])[..., None]
    w01 = ((4 - yfrac)[:, None] * xfrac[None, :])[..., None]
    w10 = (yfrac[:, None] * (4 - xfrac)[None, :])[..., None]
    w11 = (yfrac[:, None] * xfrac[None, :])[..., None]

    def interpolate(colors: np.ndarray) -> np.ndarray:
        return (
            colors[row0[:, None], col0[None, :]] * w00
            + colors[row0[:, None], col1[None, :]] * w01
            + colors[row1[:, None], col0[None, :]] * w10
            + colors[row1[:, None], col1[None, :]] * w11
        ) // 16

    interp_a = interpolate(color_a)
    interp_b = interpolate(color_b)
    src = original[:height, :width].astype(np.int64)

    # Mode 0 candidates, used to find blocks that must switch to punch-through.
    c0 = (interp_a * 5 + interp_b * 3) // 8
    d0 = (interp_a * 3 + interp_b * 5) // 8
    needs_punch = (
        (src[..., 3] == 0)
        & (interp_a[..., 3] != 0)
        & (interp_b[..., 3] != 0)
        & (c0[..., 3] != 0)
        & (d0[..., 3] != 0)
    )
    block_mode = modes.copy()
    switch = (block_mode == 0) & needs_punch.reshape(blocks_y, 4, blocks_x, 4).any(axis=(1, 3))
    block_mode[switch] = 1
    pixel_mode = np.repeat(np.repeat(block_mode, 4, axis=0), 4, axis=1)[..., None] == 1

    midpoint = (interp_a + interp_b) // 2
    punch = midpoint.copy()
    punch[..., 3] = 0
    c = np.where(pixel_mode, midpoint, c0)
    d = np.where(pixel_mode, punch, d0)

    da = colordiff_sq_array(src, interp_a)
    db = colordiff_sq_array(src, interp_b)
    dc = colordiff_sq_array(src, c)
    dd = colordiff_sq_array(src, d)
    modulation = np.full((height, width), 2, dtype=np.int64)
    modulation = np.where((dc <= da) & (dc <= db) & (dc <= dd), 1, modulation)
    modulation = np.where((db <= da) & (db <= dc) & (db <= dd), 3, modulation)
    modulation = np.where((da <= db) & (da <= dc) & (da <= dd), 0, modulation)

    for by in range(blocks_y):
        for bx in range(blocks_x):
            address = int(addresses[by, bx])
            if switch[by, bx]:
                data[address + 4] |= 1
            for row in range(4):
                codes = modulation[by * 4 + row, bx * 4:bx * 4 + 4]
                data[address + row] = int(codes[0] | codes[1] << 2 | codes[2] << 4 | codes[3] << 6)
    return bytes(data)


def read_pvr_payload(data: bytes, size: int) -> bytes:
    """Skip the header of a .pvr file and return the first `size` bytes of texture data."""
    if len(data) < 4:
        raise ValueError("PVR file too short for header")
    if data[:4] == PVR3_MAGIC:
        if len(data) < PVR3_HEADER_SIZE:
            raise ValueError("PVR file too short for header")
        (metadata_size,) = U32_LE.unpack_from(data, PVR3_METADATA_OFFSET)
        header_size = PVR3_HEADER_SIZE + metadata_size
    else:
        (header_size,) = U32_LE.unpack_from(data, 0)
    payload = data[header_size:header_size + size]
    if len(payload) != size:
        raise ValueError(f"PVR file truncated: expected {size} bytes of data, found {len(payload)}")
    return payload


def scratch_root() -> str:
    tmpdir = os.environ.get("TMPDIR")
    if not tmpdir or "'" in tmpdir:
        return "/tmp"
    return tmpdir


def run_tool(command: list[str], verbose: bool = False) -> None:
    logger.debug("Executing: %s", " ".join(command))
    output = None if verbose else subprocess.DEVNULL
    try:
        subprocess.run(command, check=True, stdout=output, stderr=output)
    except FileNotFoundError as exc:
        program = command[0]
        if "/" in program:
            hint = f"check that the path to {program} is correct"
        else:
            hint = f'check that the "{program}" program can be found in your PATH'
        raise RuntimeError(f"{program} could not be run ({hint})") from exc
    except subprocess.CalledProcessError as exc:
        suffix = "" if verbose else " (use -verbose to see errors)"
        raise RuntimeError(f"{command[0]} call failed with status {exc.returncode}{suffix}") from exc


class DxtCompressor:
    """Runs `dxtcomp -N in.rgba out.dxt W H` on a BGRA buffer."""

    def __init__(self, program: str = DEFAULT_DXTCOMP, verbose: bool = False) -> None:
        self.program = program
        self.verbose = verbose

    def compress(self, pixels: np.ndarray, dxt_type: int) -> bytes:
        height, width = pixels.shape[:2]
        bpp = 4 if dxt_type == 1 else 8
        size = width * height * bpp // 8
        with tempfile.TemporaryDirectory(prefix=SCRATCH_PREFIX, dir=scratch_root()) as tmp:
            infile = Path(tmp) / "in.rgba"
            outfile = Path(tmp) / "out.dxt"
            infile.write_bytes(np.ascontiguousarray(pixels, dtype=np.uint8).tobytes())
            run_tool(
                [self.program, f"-{dxt_type}", str(infile), str(outfile), str(width), str(height)],
                verbose=self.verbose,
            )
            data = outfile.read_bytes()
        if len(data) < size:
            raise ValueError(f"{self.program} produced {len(data)} bytes, expected {size}")
        return data[:size]


class PvrtcCompressor:
    """Runs PVRTexToolCLI on a TGA copy of the buffer and strips the .pvr header."""

    def __init__(self, program: str = DEFAULT_PVRTEXTOOL, high_quality: bool = False, verbose: bool = False) -> None:
        self.program = program
        self.high_quality = high_quality
        self.verbose = verbose

    def compress(self, pixels: np.ndarray, bpp: int) -> bytes:
        height, width = pixels.shape[:2]
        alpha = pixels.shape[2] == 4
        size = width * height * bpp // 8
        with tempfile.TemporaryDirectory(prefix=SCRATCH_PREFIX, dir=scratch_root()) as tmp:
            infile = Path(tmp) / "in.tga"
            outfile = Path(tmp) / "out.pvr"
            Image.fromarray(np.ascontiguousarray(pixels)).save(infile)
            run_tool(
                [
                    self.program,
                    "-f",
                    f"PVRTC1_{bpp}" + ("" if alpha else "_RGB"),
                    "-i",
                    str(infile),
                    "-q",
                    "pvrtcbest" if self.high_quality else "pvrtcnormal",
                    "-o",
                    str(outfile),
                ],
                verbose=self.verbose,
            )
            data = outfile.read_bytes()
        return read_pvr_payload(data, size)
