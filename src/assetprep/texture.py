#!/usr/bin/env python3

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

import numpy as np

from assetprep.binutil import align_up
from assetprep.binutil import write_atomic
from assetprep.image import is_power_of_two
from assetprep.image import next_power_of_two
from assetprep.image import resample
from assetprep.quantize import generate_palette
from assetprep.quantize import map_to_palette
from assetprep.texcompress import DxtCompressor
from assetprep.texcompress import PvrtcCompressor
from assetprep.texcompress import fix_pvrtc4_alpha
from assetprep.texcompress import prepare_dxt_input
from assetprep.texcompress import prepare_pvrtc_input

logger = logging.getLogger(__name__)

TEX_FILE_MAGIC = b"TEX\x00"
TEX_FILE_MAGIC_LEGACY = b"TEX\x0a"
TEX_FILE_VERSION = 2
TEX_HEADER_STRUCT = struct.Struct(">4sBBBBHHIIIII")
PSP_PIXELS_ALIGNMENT = 64

FORMAT_RGBA8888 = 0x00
FORMAT_RGB565 = 0x01
FORMAT_RGBA5551 = 0x02
FORMAT_RGBA4444 = 0x03
FORMAT_BGRA8888 = 0x08
FORMAT_BGR565 = 0x09
FORMAT_BGRA5551 = 0x0A
FORMAT_BGRA4444 = 0x0B
FORMAT_A8 = 0x40
FORMAT_L8 = 0x41
FORMAT_PSP_RGBA8888 = 0x70
FORMAT_PSP_RGB565 = 0x71
FORMAT_PSP_RGBA5551 = 0x72
FORMAT_PSP_RGBA4444 = 0x73
FORMAT_PSP_A8 = 0x74
FORMAT_PSP_PALETTE8 = 0x75
FORMAT_PSP_L8 = 0x76
FORMAT_PSP_RGBA8888_SWIZZLED = 0x78
FORMAT_PSP_RGB565_SWIZZLED = 0x79
FORMAT_PSP_RGBA5551_SWIZZLED = 0x7A
FORMAT_PSP_RGBA4444_SWIZZLED = 0x7B
FORMAT_PSP_A8_SWIZZLED = 0x7C
FORMAT_PSP_PALETTE8_SWIZZLED = 0x7D
FORMAT_PSP_L8_SWIZZLED = 0x7E
FORMAT_PALETTE8 = 0x80
FORMAT_DXT1 = 0x81
FORMAT_DXT3 = 0x82
FORMAT_DXT5 = 0x83
FORMAT_PVRTC2_RGBA = 0x84
FORMAT_PVRTC4_RGBA = 0x85
FORMAT_PVRTC2_RGB = 0x86
FORMAT_PVRTC4_RGB = 0x87

DXT_FORMATS = {FORMAT_DXT1: 1, FORMAT_DXT3: 3, FORMAT_DXT5: 5}
PVRTC_FORMATS = {FORMAT_PVRTC2_RGBA: 2, FORMAT_PVRTC2_RGB: 2, FORMAT_PVRTC4_RGBA: 4, FORMAT_PVRTC4_RGB: 4}
PALETTE_FORMATS = {FORMAT_PALETTE8, FORMAT_PSP_PALETTE8, FORMAT_PSP_PALETTE8_SWIZZLED}
PSP_SWIZZLED_FORMATS = {
    FORMAT_RGBA8888: FORMAT_PSP_RGBA8888_SWIZZLED,
    FORMAT_RGB565: FORMAT_PSP_RGB565_SWIZZLED,
    FORMAT_RGBA5551: FORMAT_PSP_RGBA5551_SWIZZLED,
    FORMAT_RGBA4444: FORMAT_PSP_RGBA4444_SWIZZLED,
    FORMAT_PALETTE8: FORMAT_PSP_PALETTE8_SWIZZLED,
    FORMAT_A8: FORMAT_PSP_A8_SWIZZLED,
}

PSP_MAX_MIPMAPS = 7
UNLIMITED_MIPMAPS = 99


@dataclass
class Texture:
    """Pixel data plus format metadata; each level is an array (or compressed bytes)."""

    width: int
    height: int
    format: int
    levels: list
    palette: np.ndarray | None = None
    opaque_bitmap: bytes | None = None
    stride: int = 0
    swizzled: bool = False

    def __post_init__(self) -> None:
        if not self.stride:
            self.stride = self.width

    @property
    def mipmaps(self) -> int:
        return len(self.levels) - 1


@dataclass
class TextureOptions:
    target: int = FORMAT_RGBA8888
    alpha_lo: int = 0
    alpha_hi: int = 255
    bgra: bool = False
    crop: tuple[int, int, int, int] | None = None
    resize: tuple[int, int] | None = None
    make_square: bool = False
    make_square_center: bool = False
    mipmaps: int = 0
    mipmap_regions: list[tuple[int, int, int, int]] = field(default_factory=list)
    mipmaps_transparent_at: int = 0
    opaque_bitmap: bool = False
    psp: bool = False
    scale: int | None = None

    @property
    def scale_fixed(self) -> int:
        if self.scale is not None:
            return self.scale
        return 1 << 15 if self.psp else 1 << 16

    @property
    def mipmap_limit(self) -> int:
        return min(self.mipmaps, PSP_MAX_MIPMAPS) if self.psp else self.mipmaps


@dataclass(frozen=True)
class TexHeader:
    version: int
    format: int
    mipmaps: int
    opaque_bitmap: bool
    width: int
    height: int
    scale: int
    pixels_offset: int
    pixels_size: int
    bitmap_offset: int
    bitmap_size: int


def is_compressed(fmt: int) -> bool:
    return fmt in DXT_FORMATS or fmt in PVRTC_FORMATS


def crop_pixels(pixels: np.ndarray, x: int, y: int, width: int, height: int, name: str = "") -> np.ndarray:
    src_h, src_w = pixels.shape[:2]
    if x + width > src_w or y + height > src_h:
        raise ValueError(
            f"{name}: Crop rectangle ({x},{y}+{width}x{height}) is outside texture bounds ({src_w}x{src_h})"
        )
    return pixels[y:y + height, x:x + width].copy()


def shrink_pixels(pixels: np.ndarray, width: int, height: int, name: str = "") -> np.ndarray:
    src_h, src_w = pixels.shape[:2]
    if width > src_w or height > src_h:
        raise ValueError(f"{name}: Expanding resize not currently supported")
    if width == src_w and height == src_h:
        return pixels
    return resample(pixels, width, height)


def make_square_canvas(pixels: np.ndarray, center: bool) -> np.ndarray:
    height, width = pixels.shape[:2]
    size = max(next_power_of_two(width), next_power_of_two(height))
    fill_alpha = 255 if (pixels[..., 3] == 255).all() else 0
    canvas = np.zeros((size, size, 4), dtype=np.uint8)
    canvas[..., 3] = fill_alpha
    offset_x = (size - width) // 2 if center else 0
    offset_y = (size - height) // 2 if center else 0
    canvas[offset_y:offset_y + height, offset_x:offset_x + width] = pixels
    return canvas


def square_expansion_limit(target: int) -> int:
    if target in (FORMAT_PVRTC2_RGBA, FORMAT_PVRTC2_RGB):
        return 16
    if target in (FORMAT_PVRTC4_RGBA, FORMAT_PVRTC4_RGB, FORMAT_DXT1):
        return 8
    return 4


def generate_mipmaps(
    base: np.ndarray,
    count: int,
    regions: list[tuple[int, int, int, int]] | None = None,
    transparent_at: int = 0,
) -> list[np.ndarray]:
    """Return [base, level1, ...] halving each level until count levels or 1x1.

    Regions are resampled on their own so neighboring atlas cells do not
    bleed into each other; a region stops being handled once any of its
    coordinates becomes odd.
    """
    active = [list(region) for region in (regions or [])]
    levels = [base]
    height, width = base.shape[:2]
    level = 1
    while level <= count and (width > 1 or height > 1):
        previous = levels[-1]
        width = max(1, width // 2)
        height = max(1, height // 2)
        current = resample(previous, width, height)
        for region in active:
            x, y, w, h = region
            if w == 0 or h == 0:
                continue
            if x % 2 or y % 2 or w % 2 or h % 2:
                region[2] = region[3] = 0
                continue
            current[y // 2:y // 2 + h // 2, x // 2:x // 2 + w // 2] = resample(
                previous[y:y + h, x:x + w], w // 2, h // 2
            )
            region[:] = [x // 2, y // 2, w // 2, h // 2]
        if transparent_at and level >= transparent_at:
            current[..., 3] = 0
        levels.append(current)
        level += 1
    return levels


def generate_opaque_bitmap(texture: Texture) -> bytes:
    """One bit per base-level pixel, set when the pixel is fully opaque."""
    base = texture.levels[0]
    if texture.format == FORMAT_RGBA8888:
        alpha = base[..., 3]
    elif texture.format == FORMAT_PALETTE8:
        alpha = texture.palette[base, 3]
    elif texture.format == FORMAT_A8:
        alpha = base
    else:
        raise ValueError(f"Can't generate opaque bitmap for format 0x{texture.format:02X}")
    opaque = alpha[:texture.height, :texture.width] == 255
    return np.packbits(opaque, axis=1, bitorder="little").tobytes()


def apply_alpha_thresholds(pixels: np.ndarray, lo: int, hi: int) -> np.ndarray:
    out = pixels.copy()
    alpha = out[..., 3]
    alpha[alpha <= lo] = 0
    alpha[alpha >= hi] = 255
    return out


def compress_dxt(texture: Texture, dxt_type: int, compressor, name: str = "") -> None:
    has_alpha = bool((texture.levels[0][..., 3] != 255).any())
    if has_alpha:
        if dxt_type == 1:
            logger.warning("%s: Conversion to DXT1 will drop alpha channel", name)
    else:
        dxt_type = 1
    texture.format = {1: FORMAT_DXT1, 3: FORMAT_DXT3, 5: FORMAT_DXT5}[dxt_type]
    texture.levels = [compressor.compress(prepare_dxt_input(level, dxt_type), dxt_type) for level in texture.levels]


def compress_pvrtc(texture: Texture, bpp: int, compressor) -> None:
    has_alpha = bool((texture.levels[0][..., 3] != 255).any())
    if has_alpha:
        texture.format = FORMAT_PVRTC2_RGBA if bpp == 2 else FORMAT_PVRTC4_RGBA
    else:
        texture.format = FORMAT_PVRTC2_RGB if bpp == 2 else FORMAT_PVRTC4_RGB
    compressed = []
    for level in texture.levels:
        height, width = level.shape[:2]
        data = compressor.compress(prepare_pvrtc_input(level, bpp, has_alpha), bpp)
        if bpp == 4 and width >= 4 and height >= 4 and width == height:
            data = fix_pvrtc4_alpha(level, data, width, height)
        compressed.append(data)
    texture.levels = compressed


def align_texture_psp(texture: Texture) -> None:
    """Pad each level to the 16-byte swizzle block width and a multiple of 8 lines."""
    bytes_per_pixel = 1 if texture.format in (FORMAT_PALETTE8, FORMAT_A8) else 4
    block_width = 16 // bytes_per_pixel
    aligned = []
    for level in texture.levels:
        height, width = level.shape[:2]
        padded = np.zeros((align_up(height, 8), align_up(width, block_width)) + level.shape[2:], dtype=np.uint8)
        padded[:height, :width] = level
        aligned.append(padded)
    texture.levels = aligned
    texture.stride = align_up(texture.width, block_width)


def swizzle_level(level: np.ndarray) -> np.ndarray:
    """Reorder an aligned level into 16-byte x 8-line blocks, each stored row-major."""
    height = level.shape[0]
    rows = level.reshape(height, -1)
    row_bytes = rows.shape[1]
    blocks = rows.reshape(height // 8, 8, row_bytes // 16, 16)
    return np.ascontiguousarray(blocks.transpose(0, 2, 1, 3)).reshape(-1)


def swizzle_texture(texture: Texture) -> None:
    texture.levels = [swizzle_level(level) for level in texture.levels]
    texture.swizzled = True


def convert_texture(
    pixels: np.ndarray,
    options: TextureOptions,
    dxt: DxtCompressor | None = None,
    pvrtc: PvrtcCompressor | None = None,
    name: str = "",
) -> Texture:
    """Run the conversion passes on an RGBA image and return the finished texture."""
    target = options.target
    pixels = np.array(pixels, dtype=np.uint8)
    if pixels.ndim != 3 or pixels.shape[2] != 4 or pixels.size == 0:
        raise ValueError(f"{name}: expected a non-empty RGBA image")

    if target == FORMAT_A8:
        pixels[..., :3] = 255

    if options.crop is not None:
        pixels = crop_pixels(pixels, *options.crop, name=name)

    resize = options.resize
    if resize is None and options.psp:
        resize = (max(1, pixels.shape[1] // 2), max(1, pixels.shape[0] // 2))
    if resize is not None:
        pixels = shrink_pixels(pixels, resize[0], resize[1], name=name)

    if options.make_square and is_compressed(target):
        height, width = pixels.shape[:2]
        size = max(next_power_of_two(width), next_power_of_two(height))
        if size * size >= width * height * square_expansion_limit(target):
            logger.warning(
                "%s: expanding texture would waste space; ignoring -make-square and writing as 32bpp RGBA",
                name,
            )
            target = FORMAT_RGBA8888
        else:
            pixels = make_square_canvas(pixels, options.make_square_center)

    height, width = pixels.shape[:2]
    levels = [pixels]
    if options.mipmap_limit > 0:
        if not (is_power_of_two(width) and is_power_of_two(height)):
            logger.warning("%s: Not generating mipmaps (size %dx%d is not a power of 2)", name, width, height)
        else:
            for x, y, w, h in options.mipmap_regions:
                if x + w > width or y + h > height:
                    raise ValueError(f"{name}: Mipmap region {x}:{y}:{w}:{h} is outside texture bounds ({width}x{height})")
            levels = generate_mipmaps(
                pixels,
                options.mipmap_limit,
                options.mipmap_regions,
                options.mipmaps_transparent_at,
            )

    texture = Texture(width=width, height=height, format=FORMAT_RGBA8888, levels=levels)
    if options.opaque_bitmap:
        texture.opaque_bitmap = generate_opaque_bitmap(texture)

    if is_compressed(target):
        texture.levels = [apply_alpha_thresholds(level, options.alpha_lo, options.alpha_hi) for level in texture.levels]

    if target == FORMAT_PALETTE8:
        texture.palette = generate_palette(np.concatenate([level.reshape(-1, 4) for level in texture.levels]))
        texture.levels = [map_to_palette(level, texture.palette) for level in texture.levels]
        texture.format = FORMAT_PALETTE8
    elif target == FORMAT_A8:
        texture.levels = [np.ascontiguousarray(level[..., 3]) for level in texture.levels]
        texture.format = FORMAT_A8
    elif target in DXT_FORMATS:
        compress_dxt(texture, DXT_FORMATS[target], dxt or DxtCompressor(), name=name)
    elif target in PVRTC_FORMATS:
        compress_pvrtc(texture, PVRTC_FORMATS[target], pvrtc or PvrtcCompressor())

    if options.psp:
        if texture.format not in PSP_SWIZZLED_FORMATS:
            raise ValueError(f"{name}: Invalid texture format for PSP: 0x{texture.format:02X}")
        align_texture_psp(texture)
        swizzle_texture(texture)
        texture.format = PSP_SWIZZLED_FORMATS[texture.format]

    if options.bgra and texture.format == FORMAT_RGBA8888:
        texture.levels = [np.ascontiguousarray(level[..., [2, 1, 0, 3]]) for level in texture.levels]
        texture.format = FORMAT_BGRA8888

    return texture


def _level_bytes(level) -> bytes:
    if isinstance(level, np.ndarray):
        return np.ascontiguousarray(level, dtype=np.uint8).tobytes()
    return bytes(level)


def encode_tex(texture: Texture, scale: int = 1 << 16, psp: bool = False) -> bytes:
    pixels_offset = align_up(TEX_HEADER_STRUCT.size, PSP_PIXELS_ALIGNMENT) if psp else TEX_HEADER_STRUCT.size
    pixel_data = bytearray()
    if texture.format in PALETTE_FORMATS:
        pixel_data += _level_bytes(texture.palette)
    for level in texture.levels:
        pixel_data += _level_bytes(level)

    bitmap = texture.opaque_bitmap or b""
    bitmap_offset = pixels_offset + len(pixel_data) if texture.opaque_bitmap is not None else 0
    header = TEX_HEADER_STRUCT.pack(
        TEX_FILE_MAGIC,
        TEX_FILE_VERSION,
        texture.format,
        texture.mipmaps,
        1 if texture.opaque_bitmap is not None else 0,
        texture.width,
        texture.height,
        scale,
        pixels_offset,
        len(pixel_data),
        bitmap_offset,
        len(bitmap),
    )
    return header + bytes(pixels_offset - len(header)) + bytes(pixel_data) + bitmap


def write_tex(texture: Texture, path: Path, scale: int = 1 << 16, psp: bool = False) -> None:
    write_atomic(path, encode_tex(texture, scale=scale, psp=psp))


def read_tex_header(data: bytes) -> TexHeader:
    if len(data) < TEX_HEADER_STRUCT.size:
        raise ValueError("File too short for texture header")
    fields = TEX_HEADER_STRUCT.unpack_from(data, 0)
    if fields[0] not in (TEX_FILE_MAGIC, TEX_FILE_MAGIC_LEGACY):
        raise ValueError(f"Bad texture magic: {fields[0]!r}")
    header = TexHeader(
        version=fields[1],
        format=fields[2],
        mipmaps=fields[3],
        opaque_bitmap=bool(fields[4]),
        width=fields[5],
        height=fields[6],
        scale=fields[7],
        pixels_offset=fields[8],
        pixels_size=fields[9],
        bitmap_offset=fields[10],
        bitmap_size=fields[11],
    )
    if header.pixels_offset + header.pixels_size > len(data):
        raise ValueError("Texture pixel data extends past end of file")
    if header.bitmap_offset + header.bitmap_size > len(data):
        raise ValueError("Texture opaque bitmap extends past end of file")
    return header


def output_path_for(source: Path, outdir: Path | None = None) -> Path:
    target = outdir / source.name if outdir is not None else source
    name = target.name
    if name.lower().endswith(".png"):
        name = name[:-4]
    return target.with_name(name + ".tex")
