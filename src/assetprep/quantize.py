#!/usr/bin/env python3

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import replace

import numpy as np

from assetprep.image import colordiff_sq_array
from assetprep.image import pack_pixels

PALETTE_SIZE = 256
MAP_CHUNK_PIXELS = 4096

# Component order used for split-axis selection: a, r, g, b.
AXIS_ORDER = (3, 0, 1, 2)


@dataclass
class ColorBox:
    rmin: int
    rmax: int
    gmin: int
    gmax: int
    bmin: int
    bmax: int
    amin: int
    amax: int
    ncolors: int
    first: int

    def extent(self, component: int) -> int:
        if component == 0:
            return self.rmax - self.rmin
        if component == 1:
            return self.gmax - self.gmin
        if component == 2:
            return self.bmax - self.bmin
        return self.amax - self.amin


def _fixed_array(fixed_colors) -> np.ndarray:
    fixed = np.asarray(fixed_colors, dtype=np.uint8).reshape(-1, 4)
    if len(fixed) > PALETTE_SIZE:
        raise ValueError(f"Too many fixed colors ({len(fixed)}, max {PALETTE_SIZE})")
    return fixed


def build_color_table(pixels: np.ndarray, fixed: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Return distinct colors (first-appearance order) and their counts, skipping fixed colors."""
    colors = pixels.reshape(-1, 4)
    packed = pack_pixels(colors)
    if len(fixed):
        keep = ~np.isin(packed, pack_pixels(fixed))
        colors = colors[keep]
        packed = packed[keep]
    _, first_index, counts = np.unique(packed, return_index=True, return_counts=True)
    order = np.argsort(first_index, kind="stable")
    return colors[first_index[order]].copy(), counts[order].astype(np.int64)


def shrink_box(box: ColorBox, colors: np.ndarray) -> None:
    members = colors[box.first:box.first + box.ncolors]
    lo = members.min(axis=0)
    hi = members.max(axis=0)
    box.rmin, box.gmin, box.bmin, box.amin = (int(v) for v in lo)
    box.rmax, box.gmax, box.bmax, box.amax = (int(v) for v in hi)


def split_axes(box: ColorBox) -> list[int]:
    """Components ordered by descending extent, by selection sort so ties keep a, r, g, b."""
    extents = [box.extent(component) for component in AXIS_ORDER]
    axes = list(AXIS_ORDER)
    for i in range(3):
        best = i
        for j in range(i + 1, 4):
            if extents[j] > extents[best]:
                best = j
        if best != i:
            extents[i], extents[best] = extents[best], extents[i]
            axes[i], axes[best] = axes[best], axes[i]
    return axes


def split_box(box: ColorBox, colors: np.ndarray, counts: np.ndarray) -> ColorBox:
    axes = split_axes(box)
    start = box.first
    end = box.first + box.ncolors
    members = colors[start:end]
    # lexsort treats its last key as the primary one.
    order = np.lexsort(tuple(members[:, axis] for axis in reversed(axes)))
    colors[start:end] = members[order]
    counts[start:end] = counts[start:end][order]

    newbox = replace(box)
    box.ncolors //= 2
    newbox.first += box.ncolors
    newbox.ncolors -= box.ncolors
    return newbox


def box_color(box: ColorBox, colors: np.ndarray, counts: np.ndarray) -> np.ndarray:
    members = colors[box.first:box.first + box.ncolors].astype(np.int64)
    weights = counts[box.first:box.first + box.ncolors]
    alpha_weights = np.maximum(members[:, 3] * weights // 255, 1)
    pixels = int(weights.sum())
    alpha_pixels = int(alpha_weights.sum())
    out = np.empty(4, dtype=np.uint8)
    out[3] = (int((members[:, 3] * weights).sum()) + pixels // 2) // pixels
    for component in range(3):
        total = int((members[:, component] * alpha_weights).sum())
        out[component] = (total + alpha_pixels // 2) // alpha_pixels
    return out


def generate_palette(pixels: np.ndarray, fixed_colors=()) -> np.ndarray:
    """Build a 256-entry RGBA palette for the given pixels by alpha-aware median cut.

    Fixed colors occupy the first palette slots unchanged and are excluded
    from the color table.
    """
    fixed = _fixed_array(fixed_colors)
    nfixed = len(fixed)
    palette = np.zeros((PALETTE_SIZE, 4), dtype=np.uint8)
    palette[:nfixed] = fixed
    if nfixed == PALETTE_SIZE:
        return palette

    colors, counts = build_color_table(pixels, fixed)
    ncolors = len(colors)
    available = PALETTE_SIZE - nfixed

    if ncolors <= available:
        palette[nfixed:nfixed + ncolors] = colors
        if ncolors:
            palette[nfixed + ncolors:] = colors[0]
        return palette

    boxes = [ColorBox(0, 255, 0, 255, 0, 255, 0, 255, ncolors=ncolors, first=0)]
    for _ in range(1, available):
        if boxes[0].ncolors <= 1:
            break
        shrink_box(boxes[0], colors)
        boxes.append(split_box(boxes[0], colors, counts))
        boxes.sort(key=lambda box: -box.ncolors)

    have_transparent_pixel = bool((colors[:, 3] == 0).any())
    for i, box in enumerate(boxes):
        palette[nfixed + i] = box_color(box, colors, counts)

    used = nfixed + len(boxes)
    if have_transparent_pixel and not (palette[:used, 3] == 0).any():
        best = nfixed + int(np.argmin(palette[nfixed:used, 3]))
        palette[best, 3] = 0
    return palette


def map_to_palette(pixels: np.ndarray, palette: np.ndarray) -> np.ndarray:
    """Return the index of the nearest palette entry for every pixel, lowest index on ties."""
    flat = pixels.reshape(-1, 4)
    indices = np.empty(len(flat), dtype=np.uint8)
    for start in range(0, len(flat), MAP_CHUNK_PIXELS):
        chunk = flat[start:start + MAP_CHUNK_PIXELS]
        distances = colordiff_sq_array(chunk[:, None, :], palette[None, :, :])
        indices[start:start + len(chunk)] = np.argmin(distances, axis=1)
    return indices.reshape(pixels.shape[:-1])


def quantize(pixels: np.ndarray, fixed_colors=()) -> tuple[np.ndarray, np.ndarray]:
    if pixels.size == 0:
        raise ValueError("Cannot quantize an empty image")
    palette = generate_palette(pixels, fixed_colors)
    return palette, map_to_palette(pixels, palette)
