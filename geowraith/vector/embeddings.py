"""
Embedding backends and the tier policy that degrades between them.

Every backend maps images and coordinates into the same D-dimensional space.
The extractor never hides a ModelUnavailable, and inference errors raised by a
backend are reported as one: callers pick the next tier with tier_sequence() /
embed_image_with_fallback().
"""

from abc import ABC, abstractmethod
import math
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from ..core.errors import EmbeddingDimensionMismatch, ModelUnavailable, PredictionCancelled
from .imaging import CLIP_INPUT_SIZE, decode_image, fit_square, image_statistics, to_normalized_array
from .types import TIER_ORDER, EmbeddingTier, l2_normalize
from util.logging import logger

CoordinateInput = Tuple[float, float, Optional[str]]


class IEmbeddingBackend(ABC):
    """Abstract interface for embedding backends."""

    tier: EmbeddingTier = EmbeddingTier.DETERMINISTIC
    input_size: int = CLIP_INPUT_SIZE

    @property
    @abstractmethod
    def identity(self) -> str:
        """Stable name of the backend and its weights, used in build signatures."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    def load(self) -> None:
        """Load model assets. Raises ModelUnavailable when they are missing."""

    def is_available(self) -> bool:
        try:
            self.load()
        except ModelUnavailable:
            return False
        return True

    def embed_image(self, image: Image.Image) -> np.ndarray:
        """Embed a decoded RGB image. Default path preprocesses for a CLIP-style encoder."""
        return self.embed_pixels(to_normalized_array(image, self.input_size))

    def embed_pixels(self, pixels: np.ndarray) -> np.ndarray:
        """Embed a normalized (3, H, W) array."""
        raise NotImplementedError(f"{type(self).__name__} does not accept pixel arrays")

    @abstractmethod
    def embed_coordinates(self, lat: float, lon: float, label: Optional[str] = None) -> np.ndarray:
        """Embed a coordinate pair."""
        pass

    def embed_coordinates_batch(self, points: Sequence[CoordinateInput]) -> np.ndarray:
        """Embed many coordinates. Returns an (N, D) array."""
        return np.vstack([self.embed_coordinates(lat, lon, label) for lat, lon, label in points])


class GeoCLIPBackend(IEmbeddingBackend):
    """Primary backend: GeoCLIP image and location encoders (512-d shared space)."""

    tier = EmbeddingTier.PRIMARY

    def __init__(self, device: str = "cpu"):
        self.device = device
        self._model = None
        self._torch = None
        self._load_error = None
        self._lock = threading.Lock()

    @property
    def identity(self) -> str:
        return "geoclip-vit-l14-v1"

    def get_dimension(self) -> int:
        return 512

    def load(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            if self._load_error is not None:
                raise ModelUnavailable("geoclip", self._load_error)
            try:
                import torch
                from geoclip import GeoCLIP
            except ImportError as e:
                self._load_error = f"geoclip not installed ({e}). Please install the geoclip package."
                raise ModelUnavailable("geoclip", self._load_error) from e

            try:
                model = GeoCLIP()
                model.to(self.device)
                model.eval()
            except (OSError, RuntimeError, ValueError) as e:
                self._load_error = f"failed to load weights: {e}"
                raise ModelUnavailable("geoclip", self._load_error) from e

            self._torch = torch
            self._model = model
            logger.log_operation("embedding.model_loaded", "success", {"backend": self.identity, "device": self.device})

    def embed_pixels(self, pixels: np.ndarray) -> np.ndarray:
        self.load()
        torch = self._torch
        tensor = torch.from_numpy(pixels).unsqueeze(0).to(self.device)
        with torch.no_grad():
            features = self._model.image_encoder(tensor)
        return features[0].detach().cpu().numpy()

    def embed_coordinates(self, lat: float, lon: float, label: Optional[str] = None) -> np.ndarray:
        return self.embed_coordinates_batch([(lat, lon, label)])[0]

    def embed_coordinates_batch(self, points: Sequence[CoordinateInput]) -> np.ndarray:
        self.load()
        torch = self._torch
        gps = torch.tensor([[lat, lon] for lat, lon, _ in points], dtype=torch.float32).to(self.device)
        with torch.no_grad():
            features = self._model.location_encoder(gps)
        return features.detach().cpu().numpy()


class ClipBackend(IEmbeddingBackend):
    """Secondary backend: CLIP ViT-B/32 through sentence-transformers.

    Coordinates are embedded as a text prompt in CLIP's joint image/text space,
    so image queries land near the place names that describe them.
    """

    tier = EmbeddingTier.SECONDARY

    def __init__(self, model_name: str = "clip-ViT-B-32", batch_size: int = 64):
        self.model_name = model_name
        self.batch_size = batch_size
        self._model = None
        self._load_error = None
        self._lock = threading.Lock()

    @property
    def identity(self) -> str:
        return f"sentence-transformers/{self.model_name}"

    def get_dimension(self) -> int:
        return 512

    @property
    def model(self):
        self.load()
        return self._model

    def load(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            if self._load_error is not None:
                raise ModelUnavailable("clip", self._load_error)
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                self._load_error = "sentence-transformers not installed. Please install sentence-transformers package."
                raise ModelUnavailable("clip", self._load_error) from e

            try:
                self._model = SentenceTransformer(self.model_name)
            except (OSError, RuntimeError, ValueError) as e:
                self._load_error = f"failed to load {self.model_name}: {e}"
                raise ModelUnavailable("clip", self._load_error) from e
            logger.log_operation("embedding.model_loaded", "success", {"backend": self.identity})

    @staticmethod
    def prompt_for(lat: float, lon: float, label: Optional[str] = None) -> str:
        if label:
            return f"a photo taken in {label}"
        return f"a photo taken at latitude {lat:.2f}, longitude {lon:.2f}"

    def embed_image(self, image: Image.Image) -> np.ndarray:
        # The CLIP processor applies the same mean/std normalization to the fitted square
        square = fit_square(image, self.input_size)
        return np.asarray(self.model.encode(square, convert_to_numpy=True))

    def embed_coordinates(self, lat: float, lon: float, label: Optional[str] = None) -> np.ndarray:
        return np.asarray(self.model.encode(self.prompt_for(lat, lon, label), convert_to_numpy=True))

    def embed_coordinates_batch(self, points: Sequence[CoordinateInput]) -> np.ndarray:
        prompts = [self.prompt_for(lat, lon, label) for lat, lon, label in points]
        return np.asarray(self.model.encode(prompts, batch_size=self.batch_size, convert_to_numpy=True))


class DeterministicFallbackBackend(IEmbeddingBackend):
    """Deterministic last-resort embeddings.

    Images are reduced to colour statistics and coordinates to a trigonometric
    seed, both expanded to D components. This keeps the system responsive when
    no model is available; results from this tier are never trusted for
    high confidence.
    """

    tier = EmbeddingTier.DETERMINISTIC

    def __init__(self, dimension: int = 512):
        self.dimension = dimension

    @property
    def identity(self) -> str:
        return f"deterministic-v1-{self.dimension}"

    def get_dimension(self) -> int:
        return self.dimension

    def embed_image(self, image: Image.Image) -> np.ndarray:
        base = image_statistics(image)
        i = np.arange(self.dimension)
        return (base[i % len(base)] + ((i % 17) - 8) * 0.0005).astype(np.float32)

    def embed_coordinates(self, lat: float, lon: float, label: Optional[str] = None) -> np.ndarray:
        lat_r = math.radians(lat)
        lon_r = math.radians(lon)
        seed = np.array([
            lat / 90.0,
            lon / 180.0,
            math.sin(lat_r),
            math.cos(lon_r),
            math.sin(lat_r + lon_r),
            math.cos(lat_r - lon_r),
        ], dtype=np.float32)
        i = np.arange(self.dimension)
        return (seed[i % len(seed)] + ((i % 23) - 11) * 0.0003).astype(np.float32)


def tier_sequence(mode: str = "accurate", start: EmbeddingTier = EmbeddingTier.PRIMARY) -> List[EmbeddingTier]:
    """
    Ordered tiers to attempt for a request.

    Args:
        mode: 'fast' skips the secondary backend unless it is the starting tier
        start: first tier to try (normally the tier the reference index was built in)

    Returns:
        Tiers from start down to DETERMINISTIC
    """
    chain = [tier for tier in TIER_ORDER if tier.rank >= start.rank]
    if mode == "fast":
        chain = [tier for tier in chain if tier is not EmbeddingTier.SECONDARY or tier is start]
    return chain


def next_tier(current: EmbeddingTier, mode: str = "accurate") -> Optional[EmbeddingTier]:
    """Tier to try after current fails, or None when the chain is exhausted."""
    chain = tier_sequence(mode, current)
    return chain[1] if len(chain) > 1 else None


class EmbeddingExtractor:
    """
    Turns image bytes or coordinates into unit-normalized D-dimensional vectors.

    Holds one backend per tier. Single-tier calls raise ModelUnavailable as-is;
    embed_image_with_fallback applies tier_sequence on top.
    """

    def __init__(self, backends: Dict[EmbeddingTier, IEmbeddingBackend], dimension: int = 512):
        self.backends = dict(backends)
        self.dimension = dimension

    def backend(self, tier: EmbeddingTier) -> IEmbeddingBackend:
        backend = self.backends.get(tier)
        if backend is None:
            raise ModelUnavailable(tier.value, "no backend configured for this tier")
        return backend

    def is_available(self, tier: EmbeddingTier) -> bool:
        backend = self.backends.get(tier)
        return backend is not None and backend.is_available()

    def identity(self, tier: EmbeddingTier) -> str:
        return self.backend(tier).identity

    def _invoke(self, tier: EmbeddingTier, method: str, *args):
        """Call a backend method; inference errors surface as ModelUnavailable for the tier chain."""
        backend = self.backend(tier)
        try:
            return getattr(backend, method)(*args)
        except (RuntimeError, ValueError) as e:
            # torch OOM and bad-tensor errors are RuntimeError subclasses
            raise ModelUnavailable(tier.value, f"inference failed: {type(e).__name__}: {e}") from e

    def _finalize(self, raw, tier: EmbeddingTier) -> np.ndarray:
        vector = np.asarray(raw, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise EmbeddingDimensionMismatch(self.dimension, vector.shape[0], tier.value)
        normalized = l2_normalize(vector)
        if normalized is None:
            raise ModelUnavailable(tier.value, "backend produced a non-normalizable vector")
        return normalized

    def embed_decoded(self, image: Image.Image, tier: EmbeddingTier = EmbeddingTier.PRIMARY) -> np.ndarray:
        """Embed an already decoded image with one tier."""
        return self._finalize(self._invoke(tier, "embed_image", image), tier)

    def embed_image(self, image_bytes: bytes, tier: EmbeddingTier = EmbeddingTier.PRIMARY) -> np.ndarray:
        """Decode and embed image bytes with one tier."""
        return self.embed_decoded(decode_image(image_bytes), tier)

    def embed_coordinates(self, lat: float, lon: float, label: Optional[str] = None,
                          tier: EmbeddingTier = EmbeddingTier.PRIMARY) -> np.ndarray:
        """Embed a coordinate pair with one tier."""
        return self._finalize(self._invoke(tier, "embed_coordinates", lat, lon, label), tier)

    def embed_coordinates_batch(self, points: Sequence[CoordinateInput],
                                tier: EmbeddingTier = EmbeddingTier.PRIMARY) -> List[np.ndarray]:
        """Embed many coordinate pairs with one tier."""
        if not points:
            return []
        raw = np.asarray(self._invoke(tier, "embed_coordinates_batch", points), dtype=np.float32)
        if raw.ndim != 2 or raw.shape[0] != len(points):
            raise ModelUnavailable(tier.value, f"batch returned shape {raw.shape} for {len(points)} points")
        return [self._finalize(row, tier) for row in raw]

    def embed_image_with_fallback(self, image_bytes: bytes, mode: str = "accurate",
                                  start: EmbeddingTier = EmbeddingTier.PRIMARY,
                                  cancel_event: Optional[threading.Event] = None) -> Tuple[np.ndarray, EmbeddingTier]:
        """
        Embed image bytes walking the tier chain until one backend succeeds.

        Returns:
            (unit vector, tier that produced it)

        Raises:
            InvalidImage: the bytes could not be decoded (no tier can help)
            ModelUnavailable: every tier in the chain failed
            PredictionCancelled: cancel_event was set before a tier produced a vector
        """
        image = decode_image(image_bytes)
        last_error = None
        for tier in tier_sequence(mode, start):
            if cancel_event is not None and cancel_event.is_set():
                raise PredictionCancelled("Prediction cancelled before embedding completed")
            try:
                vector = self.embed_decoded(image, tier)
            except ModelUnavailable as e:
                last_error = e
                logger.log_embedding_tier("image", tier.value, "degraded", {"reason": str(e)})
                continue
            if tier is not start:
                logger.log_embedding_tier("image", tier.value, "fallback", {"requested": start.value})
            return vector, tier

        raise last_error or ModelUnavailable("all", "no embedding tier available")
