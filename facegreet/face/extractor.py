"""Embedding-extractor boundary.

The engine never computes signatures itself: it hands the canonical image to an
extractor and manages what comes back. Adapters below wrap the two model
families the project is used with; anything else only has to implement
`extract` (and optionally `similarity`, when the model defines its own
canonical score).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import torch

from facegreet.errors import ExtractionError
from facegreet.utils.log import get_logger, silence_native_output

logger = get_logger(__name__)

# In-process model cache: building the same model twice (tests, several recognizers) is slow.
_MODEL_CACHE: Dict[Tuple, object] = {}


class EmbeddingExtractor(ABC):
    """`extract(canonical_image) -> (D,) float32 signature`."""

    # Canonical similarity of the model's vector space; None means cosine.
    similarity = None

    @abstractmethod
    def extract(self, image: np.ndarray) -> np.ndarray:
        """Return the signature of a canonical image; raise ExtractionError on failure."""

    def __call__(self, image: np.ndarray) -> np.ndarray:
        return self.extract(image)


def _flatten(feat) -> np.ndarray:
    vec = np.asarray(feat, dtype=np.float32).reshape(-1)
    if vec.size == 0:
        raise ExtractionError("extractor returned an empty signature")
    return vec.copy()


def resolve_device(device: str = "auto") -> str:
    """'auto' -> 'gpu' when CUDA is available, else 'cpu'."""
    if device != "auto":
        return device
    try:
        return "gpu" if torch.cuda.is_available() else "cpu"
    except Exception:
        return "cpu"


class SFaceExtractor(EmbeddingExtractor):
    """OpenCV `FaceRecognizerSF` (SFace ONNX model), scored with FR_COSINE."""

    def __init__(self, model_path: str, config_path: str = ""):
        self.model_path = Path(model_path)
        if not self.model_path.is_file():
            raise ExtractionError(f"SFace model not found: {self.model_path}")

        key = ("sface", str(self.model_path), str(config_path))
        model = _MODEL_CACHE.get(key)
        if model is None:
            try:
                model = cv2.FaceRecognizerSF.create(str(self.model_path), str(config_path))
            except cv2.error as e:
                raise ExtractionError(f"failed to load SFace model {self.model_path}: {e}") from e
            _MODEL_CACHE[key] = model
            logger.info(f"Loaded SFace model: {self.model_path}")
        self._model = model

    def extract(self, image: np.ndarray) -> np.ndarray:
        try:
            feat = self._model.feature(np.ascontiguousarray(image))
        except cv2.error as e:
            raise ExtractionError(f"SFace feature extraction failed: {e}") from e
        return _flatten(feat)

    def similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        fa = np.asarray(a, dtype=np.float32).reshape(1, -1)
        fb = np.asarray(b, dtype=np.float32).reshape(1, -1)
        return float(self._model.match(fa, fb, cv2.FaceRecognizerSF_FR_COSINE))


class InsightFaceExtractor(EmbeddingExtractor):
    """InsightFace ArcFace recognition model (e.g. `w600k_r50.onnx`).

    The model resizes to its own input size; the canonical [0, 1] image is
    rescaled back to 0..255 before `get_feat`.
    """

    def __init__(self, model_path: str, device: str = "auto"):
        self.model_path = Path(model_path)
        if not self.model_path.is_file():
            raise ExtractionError(f"InsightFace model not found: {self.model_path}")

        device = resolve_device(device)
        if device == "gpu":
            providers = ["CUDAExecutionProvider"]
            self.ctx_id = 0
        else:
            providers = ["CPUExecutionProvider"]
            self.ctx_id = -1

        key = ("insightface", str(self.model_path), tuple(providers), int(self.ctx_id))
        model = _MODEL_CACHE.get(key)
        if model is None:
            # Lazy import: insightface is only needed when this adapter is selected.
            from insightface.model_zoo import get_model

            try:
                with silence_native_output():
                    model = get_model(str(self.model_path), providers=providers)
                    if model is None:
                        raise ExtractionError(f"insightface does not recognize model {self.model_path}")
                    model.prepare(ctx_id=self.ctx_id)
            except ExtractionError:
                raise
            except Exception as e:
                raise ExtractionError(f"failed to load InsightFace model {self.model_path}: {e}") from e
            _MODEL_CACHE[key] = model
            logger.info(f"Loaded InsightFace model: {self.model_path} ({providers[0]})")
        self._model = model

    def extract(self, image: np.ndarray) -> np.ndarray:
        img = np.clip(np.asarray(image, dtype=np.float32) * 255.0, 0.0, 255.0).astype(np.uint8)
        try:
            feat = self._model.get_feat(img)
        except Exception as e:
            raise ExtractionError(f"InsightFace feature extraction failed: {e}") from e
        return _flatten(feat)


EXTRACTORS = {
    "sface": SFaceExtractor,
    "insightface": InsightFaceExtractor,
}


def create_extractor(kind: str, model_path: str, device: Optional[str] = None) -> EmbeddingExtractor:
    """Build one of the bundled adapters by name."""
    if kind not in EXTRACTORS:
        raise ExtractionError(f"unknown extractor {kind!r}, expected one of {sorted(EXTRACTORS)}")
    if kind == "insightface":
        return InsightFaceExtractor(model_path, device=device or "auto")
    return SFaceExtractor(model_path)
