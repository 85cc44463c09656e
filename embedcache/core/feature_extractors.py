# core/feature_extractors.py

import importlib.util
import logging
import os
from typing import Optional

import cv2
import numpy as np

from embedcache.core.errors import ExtractionError, InvalidOptionsError
from embedcache.security.input_validation import SecurityValidator

logger = logging.getLogger(__name__)

MODEL_TYPES = ('histogram', 'clip', 'combined')


def neural_backend_available() -> bool:
    """True when torch and transformers can be imported"""
    return all(importlib.util.find_spec(name) is not None
               for name in ('torch', 'transformers'))


class FeatureExtractor:
    """
    Base embedding function: image reference -> fixed-length vector

    Subclasses implement ``_extract_array`` on a decoded BGR image; loading,
    validation, optional blur enhancement and error wrapping live here.
    """

    name = 'base'
    dimension: Optional[int] = None

    def __init__(self, enhance_blurry: bool = False, max_image_dimension: int = 1024):
        self.enhance_blurry = enhance_blurry
        self.max_image_dimension = max_image_dimension

    def extract(self, image_reference, options: Optional[dict] = None) -> np.ndarray:
        """
        Extract an embedding

        Args:
            image_reference: Path, ``file://`` URI, encoded bytes, decoded
                array, or a mapping / object carrying a ``uri``
            options: Extractor-specific options

        Raises:
            ExtractionError: if the image cannot be loaded or processed
        """
        try:
            image = self._load_and_preprocess(image_reference)
            features = self._extract_array(image, options or {})
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"{self.name} extraction failed: {e}") from e

        return np.asarray(features, dtype=np.float32).ravel()

    def _extract_array(self, image: np.ndarray, options: dict) -> np.ndarray:
        raise NotImplementedError

    def _load_and_preprocess(self, image_reference) -> np.ndarray:
        img = self.load_image(image_reference)

        img = self._limit_size(img)
        if self.enhance_blurry and self._detect_blur(img):
            img = self._enhance_blurry_image(img)

        return img

    @staticmethod
    def load_image(image_reference) -> np.ndarray:
        """Decode any supported reference into a BGR uint8 array"""
        if isinstance(image_reference, np.ndarray):
            img = image_reference
            if img.ndim == 2:
                img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
            return img

        if isinstance(image_reference, (bytes, bytearray)):
            buffer = np.frombuffer(bytes(image_reference), dtype=np.uint8)
            img = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
            if img is None:
                raise ExtractionError("Cannot decode image bytes")
            return img

        if isinstance(image_reference, dict):
            image_reference = image_reference.get('uri') or image_reference.get('path')
        elif not isinstance(image_reference, (str, os.PathLike)) and \
                getattr(image_reference, 'uri', None):
            image_reference = image_reference.uri

        if not image_reference:
            raise ExtractionError("Image reference has no uri or path")

        reference = os.fspath(image_reference)
        if SecurityValidator.is_remote(reference):
            raise ExtractionError(f"Remote image references are not fetched: {reference}")

        try:
            path = SecurityValidator.validate_image_path(reference)
        except (OSError, ValueError) as e:
            raise ExtractionError(f"Invalid image reference {reference}: {e}") from e

        img = cv2.imread(str(path))
        if img is None:
            raise ExtractionError(f"Cannot load image: {reference}")
        return img

    def _limit_size(self, image: np.ndarray) -> np.ndarray:
        h, w = image.shape[:2]
        if max(h, w) <= self.max_image_dimension:
            return image

        scale = self.max_image_dimension / max(h, w)
        return cv2.resize(image, (int(w * scale), int(h * scale)),
                          interpolation=cv2.INTER_AREA)

    @staticmethod
    def _detect_blur(image: np.ndarray, threshold: float = 100.0) -> bool:
        """Detect if image is blurry using Laplacian variance"""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        laplacian_var = cv2.Laplacian(gray, cv2.CV_64F).var()
        return laplacian_var < threshold

    @staticmethod
    def _enhance_blurry_image(image: np.ndarray) -> np.ndarray:
        """Apply enhancement techniques for blurry images"""
        # Unsharp masking
        gaussian = cv2.GaussianBlur(image, (0, 0), 2.0)
        unsharp = cv2.addWeighted(image, 1.5, gaussian, -0.5, 0)

        # Contrast enhancement on the lightness channel
        lab = cv2.cvtColor(unsharp, cv2.COLOR_BGR2LAB)
        l, a, b = cv2.split(lab)
        clahe = cv2.createCLAHE(clipLimit=3.0, tileGridSize=(8, 8))
        l = clahe.apply(l)
        enhanced = cv2.merge([l, a, b])

        return cv2.cvtColor(enhanced, cv2.COLOR_LAB2BGR)


class HistogramFeatureExtractor(FeatureExtractor):
    """
    Colour histogram + gradient texture features; needs no model weights
    """

    name = 'histogram'
    INPUT_SIZE = (224, 224)

    def __init__(self, bins: int = 32, **kwargs):
        super().__init__(**kwargs)
        if bins <= 0:
            raise InvalidOptionsError(f"bins must be positive, got {bins}")
        self.bins = bins
        self.dimension = 3 * bins + 3

    def _extract_array(self, image: np.ndarray, options: dict) -> np.ndarray:
        resized = cv2.resize(image, self.INPUT_SIZE, interpolation=cv2.INTER_AREA)
        n_pixels = float(resized.shape[0] * resized.shape[1])

        histograms = []
        # OpenCV stores BGR; emit R, G, B order
        for channel in (2, 1, 0):
            hist = cv2.calcHist([resized], [channel], None, [self.bins], [0, 256])
            histograms.append(hist.ravel() / n_pixels)

        texture = self._texture_features(resized)

        return np.concatenate(histograms + [texture])

    @staticmethod
    def _texture_features(image: np.ndarray) -> np.ndarray:
        """Sobel gradient magnitude mean / std / max, scaled to ~[0, 1]"""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY).astype(np.float32) / 255.0
        grad_x = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
        grad_y = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
        magnitude = np.sqrt(grad_x ** 2 + grad_y ** 2)

        return np.array([magnitude.mean(), magnitude.std(), magnitude.max()],
                        dtype=np.float32)


class CombinedFeatureExtractor(FeatureExtractor):
    """
    Weighted concatenation of a primary (usually neural) and secondary extractor
    """

    name = 'combined'

    def __init__(self, primary: FeatureExtractor, secondary: FeatureExtractor,
                 primary_weight: float = 0.7, **kwargs):
        super().__init__(**kwargs)
        if not 0.0 <= primary_weight <= 1.0:
            raise InvalidOptionsError(f"primary_weight must be in [0, 1], got {primary_weight}")
        self.primary = primary
        self.secondary = secondary
        self.primary_weight = primary_weight
        if primary.dimension is not None and secondary.dimension is not None:
            self.dimension = primary.dimension + secondary.dimension

    def _extract_array(self, image: np.ndarray, options: dict) -> np.ndarray:
        weight = options.get('cnn_weight', self.primary_weight)
        # Image is already preprocessed; bypass the sub-extractors' loading
        primary = np.asarray(self.primary._extract_array(image, options), dtype=np.float32).ravel()
        secondary = np.asarray(self.secondary._extract_array(image, options), dtype=np.float32).ravel()
        return np.concatenate([primary * weight, secondary * (1.0 - weight)])


def create_feature_extractor(config) -> FeatureExtractor:
    """
    Pick the embedding function variant once, at construction time

    A neural model is used only when the configuration asks for one and the
    torch / transformers stack is importable; otherwise the histogram
    extractor is chosen up front.
    """
    model_type = config.model_type
    if model_type not in MODEL_TYPES:
        raise InvalidOptionsError(
            f"Unsupported extraction method: {model_type}",
            details={'recognized': list(MODEL_TYPES)}
        )

    common = {
        'enhance_blurry': config.enhance_blurry,
        'max_image_dimension': config.max_image_dimension
    }
    histogram = HistogramFeatureExtractor(bins=config.histogram_bins, **common)

    if model_type == 'histogram':
        return histogram

    if not neural_backend_available():
        logger.warning(f"Neural backend unavailable; using histogram features instead of '{model_type}'")
        return histogram

    from embedcache.core.neural_extractors import CLIPFeatureExtractor

    device = 'cuda' if config.use_gpu else 'cpu'
    clip = CLIPFeatureExtractor(model_name=config.model_name, device=device, **common)

    if model_type == 'clip':
        return clip

    return CombinedFeatureExtractor(clip, histogram, primary_weight=config.cnn_weight, **common)
