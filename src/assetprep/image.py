#!/usr/bin/env python3

from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

# Images are (height, width, 4) uint8 arrays in R, G, B, A component order.
ALPHA_WEIGHT = 255 * 255 + 1


def load_png(path: Path) -> np.ndarray:
    with Image.open(path) as image:
        return np.array(image.convert("RGBA"), dtype=np.uint8)


def new_image(width: int, height: int, fill: tuple[int, int, int, int] = (0, 0, 0, 0)) -> np.ndarray:
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[...] = fill
    return pixels


def pack_pixels(pixels: np.ndarray) -> np.ndarray:
    """Pack RGBA components into 0xAARRGGBB integers."""
    p = pixels.astype(np.uint32)
    return (p[..., 3] << 24) | (p[..., 0] << 16) | (p[..., 1] << 8) | p[..., 2]


def unpack_pixels(values) -> np.ndarray:
    v = np.asarray(values, dtype=np.uint32)
    out = np.empty(v.shape + (4,), dtype=np.uint8)
    out[..., 0] = (v >> 16) & 0xFF
    out[..., 1] = (v >> 8) & 0xFF
    out[..., 2] = v & 0xFF
    out[..., 3] = (v >> 24) & 0xFF
    return out


def colordiff_sq(c1, c2) -> int:
    """Alpha-aware squared distance between two (r, g, b, a) colors."""
    r1, g1, b1, a1 = (int(v) for v in c1)
    r2, g2, b2, a2 = (int(v) for v in c2)
    rgb_weight = a1 * a2 + 1
    return ((a1 - a2) ** 2 * ALPHA_WEIGHT + ((r1 - r2) ** 2 + (g1 - g2) ** 2 + (b1 - b2) ** 2) * rgb_weight) // 4


def colordiff_sq_array(c1: np.ndarray, c2: np.ndarray) -> np.ndarray:
    """Broadcasting form of colordiff_sq over trailing RGBA axes."""
    a = c1.astype(np.int64)
    b = c2.astype(np.int64)
    diff = a - b
    rgb = (diff[..., :3] ** 2).sum(axis=-1)
    return (diff[..., 3] ** 2 * ALPHA_WEIGHT + rgb * (a[..., 3] * b[..., 3] + 1)) // 4


def morton_index(x: int, y: int, width: int, height: int) -> int:
    """Interleave the bits of x and y, dropping y bits once height is exhausted and vice versa."""
    index = 0
    shift = 0
    while width > 0 or height > 0:
        if width > 0:
            index |= (x & 1) << shift
            shift += 1
            x >>= 1
            width >>= 1
        if height > 0:
            index |= (y & 1) << shift
            shift += 1
            y >>= 1
            height >>= 1
    return index


def is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


def next_power_of_two(value: int) -> int:
    result = 1
    while result < value:
        result <<= 1
    return result


def resample(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Bicubic resample of an RGBA array, filtering each component independently."""
    if pixels.shape[1] == width and pixels.shape[0] == height:
        return pixels.copy()
    bands = []
    for channel in range(4):
        band = Image.fromarray(np.ascontiguousarray(pixels[..., channel]))
        bands.append(np.array(band.resize((width, height), Image.Resampling.BICUBIC), dtype=np.uint8))
    return np.stack(bands, axis=-1)
