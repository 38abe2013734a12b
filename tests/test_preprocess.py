from __future__ import annotations

from pathlib import Path

import sys

import numpy as np
import pytest

# Ensure repo root is on sys.path so tests can import `facegreet` without installing.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from facegreet.config import PreprocessConfig
from facegreet.errors import InvalidInput
from facegreet.face.preprocess import Preprocessor, normalize


def _random_face(h: int = 97, w: int = 83, channels: int = 3, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    shape = (h, w) if channels == 0 else (h, w, channels)
    return rng.integers(0, 256, size=shape, dtype=np.uint8)


def test_normalize_is_deterministic():
    img = _random_face()
    a = normalize(img)
    b = normalize(img)
    assert a.dtype == np.float32
    assert a.shape == (224, 224, 3)
    assert np.array_equal(a, b)


def test_normalize_output_range_and_input_untouched():
    img = _random_face(seed=3)
    before = img.copy()
    out = normalize(img)
    assert np.array_equal(img, before)
    assert float(out.min()) >= 0.0
    assert float(out.max()) <= 1.0


def test_grayscale_is_replicated_to_three_channels():
    gray = _random_face(channels=0, seed=1)
    out = normalize(gray)
    assert out.shape == (224, 224, 3)
    # Equal channels stay (almost) equal through the YUV round trip.
    assert float(np.abs(out[..., 0] - out[..., 1]).max()) <= 1.0 / 255.0 + 1e-6
    assert float(np.abs(out[..., 1] - out[..., 2]).max()) <= 1.0 / 255.0 + 1e-6


def test_single_channel_3d_matches_2d():
    gray = _random_face(channels=0, seed=2)
    assert np.array_equal(normalize(gray), normalize(gray[:, :, None]))


def test_bgra_is_accepted():
    bgra = _random_face(channels=4, seed=4)
    assert np.array_equal(normalize(bgra), normalize(np.ascontiguousarray(bgra[:, :, :3])))


def test_float_input_in_unit_range_matches_uint8():
    img = _random_face(seed=5)
    as_float = img.astype(np.float64) / 255.0
    assert np.array_equal(normalize(img), normalize(as_float))


def test_wide_integer_images():
    img = _random_face(seed=7)
    assert np.array_equal(normalize(img.astype(np.int32)), normalize(img))
    assert np.array_equal(normalize(img.astype(np.uint16) * 257), normalize(img))

    sixteen_bit = img.astype(np.int32) * 257
    with pytest.raises(InvalidInput):
        normalize(sixteen_bit)
    with pytest.raises(InvalidInput):
        normalize(img.astype(np.int16) - 1)


def test_luminance_is_equalized():
    # Low-contrast crop: all pixels within a narrow band.
    rng = np.random.default_rng(6)
    img = rng.integers(100, 111, size=(64, 64, 3), dtype=np.uint8)
    out = normalize(img)
    assert float(out.max() - out.min()) > 0.5


@pytest.mark.parametrize(
    "bad",
    [
        None,
        [[1, 2], [3, 4]],
        np.zeros((0, 10, 3), dtype=np.uint8),
        np.zeros((10, 0), dtype=np.uint8),
        np.zeros((10, 10, 2), dtype=np.uint8),
        np.zeros((4,), dtype=np.uint8),
    ],
)
def test_invalid_regions_raise(bad):
    with pytest.raises(InvalidInput):
        normalize(bad)


def test_canonical_size_is_configurable():
    pre = Preprocessor(PreprocessConfig(canonical_size=112))
    out = pre(_random_face())
    assert out.shape == (112, 112, 3)
    assert pre.canonical_shape == (112, 112, 3)


def test_optional_conditioning_is_deterministic():
    pre = Preprocessor(PreprocessConfig(stretch_contrast=True, blur_kernel=3))
    img = _random_face(seed=7)
    assert np.array_equal(pre.normalize(img), pre.normalize(img))


def test_even_blur_kernel_rejected():
    with pytest.raises(InvalidInput):
        PreprocessConfig(blur_kernel=4)
