from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from facegreet.config import PreprocessConfig
from facegreet.errors import InvalidInput


def _to_uint8(image: np.ndarray) -> np.ndarray:
    """Bring an image into the 8-bit range expected by histogram equalization."""
    if image.dtype == np.uint8:
        return image
    if image.dtype == np.uint16:
        return (image.astype(np.float32) / 257.0).round().astype(np.uint8)
    if np.issubdtype(image.dtype, np.floating):
        if not np.all(np.isfinite(image)):
            raise InvalidInput("image contains non-finite pixel values")
        # Floating input is taken to be in [0, 1].
        return (np.clip(image, 0.0, 1.0) * 255.0).round().astype(np.uint8)
    if np.issubdtype(image.dtype, np.integer):
        # Other integer dtypes carry no known bit depth: only 8-bit values are accepted as-is.
        lo, hi = int(image.min()), int(image.max())
        if lo < 0 or hi > 255:
            raise InvalidInput(
                f"{image.dtype} image values span [{lo}, {hi}]; convert to uint8 or uint16 first"
            )
        return image.astype(np.uint8)
    raise InvalidInput(f"unsupported image dtype {image.dtype}")


def _check_image(image) -> np.ndarray:
    if image is None:
        raise InvalidInput("image is None")
    if not isinstance(image, np.ndarray):
        raise InvalidInput(f"image must be a numpy array, got {type(image).__name__}")
    if image.ndim not in (2, 3):
        raise InvalidInput(f"image must be 2-D or 3-D, got shape {image.shape}")
    h, w = image.shape[:2]
    if h == 0 or w == 0 or image.size == 0:
        raise InvalidInput(f"image region is empty (shape {image.shape})")
    if image.ndim == 3 and image.shape[2] not in (1, 3, 4):
        raise InvalidInput(f"unsupported channel count {image.shape[2]}")
    return image


class Preprocessor:
    """Turns an arbitrary face crop into the canonical image fed to the extractor.

    Steps, in order (after the optional contrast stretch / blur of the config):
      1. resize to `canonical_size` x `canonical_size` (bilinear),
      2. grayscale -> 3-channel BGR by replication,
      3. equalize the luminance channel in YUV space, chroma untouched,
      4. rescale to float32 in [0, 1].

    Enrollment and recognition must share one instance: a signature is only
    comparable with signatures produced from identically conditioned input.
    The input array is never modified.
    """

    def __init__(self, config: Optional[PreprocessConfig] = None):
        self.config = config or PreprocessConfig()

    @property
    def canonical_shape(self):
        s = int(self.config.canonical_size)
        return (s, s, 3)

    def _condition(self, img: np.ndarray) -> np.ndarray:
        if self.config.stretch_contrast:
            img = cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX)
        k = int(self.config.blur_kernel)
        if k > 0:
            img = cv2.GaussianBlur(img, (k, k), 0)
        return img

    def normalize(self, image: np.ndarray) -> np.ndarray:
        img = _to_uint8(_check_image(image))

        if img.ndim == 3 and img.shape[2] == 1:
            img = np.ascontiguousarray(img[:, :, 0])
        elif img.ndim == 3 and img.shape[2] == 4:
            img = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)

        img = self._condition(img)

        size = int(self.config.canonical_size)
        if img.shape[0] != size or img.shape[1] != size:
            img = cv2.resize(img, (size, size), interpolation=cv2.INTER_LINEAR)
        else:
            img = img.copy()

        if img.ndim == 2:
            img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)

        yuv = cv2.cvtColor(img, cv2.COLOR_BGR2YUV)
        yuv[:, :, 0] = cv2.equalizeHist(np.ascontiguousarray(yuv[:, :, 0]))
        img = cv2.cvtColor(yuv, cv2.COLOR_YUV2BGR)

        return img.astype(np.float32) / np.float32(255.0)

    __call__ = normalize


_DEFAULT = Preprocessor()


def normalize(image: np.ndarray) -> np.ndarray:
    """Normalize with the default (224x224) pipeline."""
    return _DEFAULT.normalize(image)
