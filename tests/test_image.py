import numpy as np
from PIL import Image

from assetprep.image import colordiff_sq
from assetprep.image import colordiff_sq_array
from assetprep.image import is_power_of_two
from assetprep.image import load_png
from assetprep.image import morton_index
from assetprep.image import next_power_of_two
from assetprep.image import pack_pixels
from assetprep.image import resample
from assetprep.image import unpack_pixels


def test_pack_and_unpack():
    pixels = unpack_pixels([0x80FF4020])
    assert pixels.tolist() == [[0xFF, 0x40, 0x20, 0x80]]
    assert int(pack_pixels(pixels)[0]) == 0x80FF4020


def test_colordiff_weights_rgb_by_alpha():
    assert colordiff_sq((0, 0, 0, 0), (255, 255, 255, 0)) == 255 * 255 * 3 // 4
    assert colordiff_sq((10, 0, 0, 255), (0, 0, 0, 255)) == 100 * (255 * 255 + 1) // 4
    assert colordiff_sq((0, 0, 0, 0), (0, 0, 0, 255)) == 255 * 255 * (255 * 255 + 1) // 4

    a = np.array([(1, 2, 3, 4), (200, 100, 50, 255)], dtype=np.uint8)
    b = np.array([(9, 8, 7, 6), (0, 0, 0, 0)], dtype=np.uint8)
    assert colordiff_sq_array(a, b).tolist() == [colordiff_sq(a[i], b[i]) for i in range(2)]


def test_morton_index():
    assert morton_index(0, 0, 2, 2) == 0
    assert morton_index(1, 0, 2, 2) == 1
    assert morton_index(0, 1, 2, 2) == 2
    assert morton_index(1, 1, 2, 2) == 3
    assert morton_index(2, 0, 4, 1) == 4


def test_power_of_two_helpers():
    assert is_power_of_two(1)
    assert is_power_of_two(256)
    assert not is_power_of_two(0)
    assert not is_power_of_two(12)
    assert next_power_of_two(1) == 1
    assert next_power_of_two(17) == 32


def test_resample_constant_image():
    pixels = np.zeros((8, 8, 4), dtype=np.uint8)
    pixels[..., 0] = 255
    pixels[..., 3] = 255
    out = resample(pixels, 4, 2)
    assert out.shape == (2, 4, 4)
    assert (out == (255, 0, 0, 255)).all()


def test_load_png_converts_to_rgba(tmp_path):
    path = tmp_path / "gray.png"
    Image.new("L", (3, 2), 77).save(path)
    pixels = load_png(path)
    assert pixels.shape == (2, 3, 4)
    assert (pixels == (77, 77, 77, 255)).all()
