"""
A Python library providing the stencil image processing core: tone curves,
color/luminance quantization with two fidelity tiers, and opacity blending.
Use this as a standalone library or import it from your application.

Pixel buffers are numpy uint8 arrays of shape (height, width, 4) holding RGBA
values. Every stage allocates a new buffer; inputs are never written to.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from itertools import count
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, NamedTuple, Optional, Tuple

import numpy as np
from scipy.spatial.distance import cdist

__all__ = [
    # Errors
    'StencilError',
    'InvalidSettingsError',
    'DimensionMismatchError',
    'EmptyBufferError',
    # Data model
    'FidelityTier',
    'CurvePoint',
    'TierParams',
    'ProcessingSettings',
    'Artifacts',
    'CHANNEL_ALL',
    'CHANNEL_RED',
    'CHANNELS',
    'IDENTITY_CURVE',
    'STENCIL_RED_CURVE',
    'DEFAULT_CURVES',
    'DEFAULT_TIER_PARAMS',
    # Curves
    'make_curve',
    'make_curve_set',
    'validate_curve',
    'build_lut',
    # Stages
    'apply_curves',
    'luminance',
    'desaturate',
    'ColorQuantizer',
    'quantize',
    'blend',
    # Pipeline
    'make_source_buffer',
    'StencilPipeline',
    'process',
]

logger = logging.getLogger(__name__)


# -------------------- Errors --------------------

class StencilError(Exception):
    """Base class for every error raised by the stencil core."""


class InvalidSettingsError(StencilError, ValueError):
    """Raised when settings or curves violate their invariants."""


class DimensionMismatchError(StencilError, ValueError):
    """Raised when two buffers that must share dimensions do not."""


class EmptyBufferError(StencilError, ValueError):
    """Raised when the source buffer is missing or holds no pixels."""


# -------------------- Enumerations & Constants --------------------

class FidelityTier(Enum):
    LOW = "low"
    HIGH = "high"


CHANNEL_ALL = "all"
CHANNEL_RED = "red"
CHANNELS = (CHANNEL_ALL, CHANNEL_RED)

MIN_LEVELS, MAX_LEVELS = 2, 20
MIN_OPACITY, MAX_OPACITY = 0, 100

# Rec. 601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)

CONVERGENCE_TOLERANCE = 0.5
ASSIGN_CHUNK_SIZE = 65536
LUT_CACHE_LIMIT = 512


# -------------------- Curves --------------------

class CurvePoint(NamedTuple):
    x: int
    y: int


IDENTITY_CURVE = (CurvePoint(0, 0), CurvePoint(255, 255))

# "Deep blacks, bright whites" stencil preset for the red channel
STENCIL_RED_CURVE = (
    CurvePoint(0, 0),
    CurvePoint(65, 15),
    CurvePoint(190, 240),
    CurvePoint(255, 255),
)

DEFAULT_CURVES = MappingProxyType({
    CHANNEL_ALL: IDENTITY_CURVE,
    CHANNEL_RED: STENCIL_RED_CURVE,
})


def _as_intensity(value, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise InvalidSettingsError(f"{what} must be a number, got {value!r}")
    if int(value) != value:
        raise InvalidSettingsError(f"{what} must be an integer, got {value!r}")
    return int(value)


def validate_curve(curve: Tuple[CurvePoint, ...]):
    """
    Check the curve invariant: at least two points, coordinates in [0,255],
    x strictly ascending, first x == 0 and last x == 255.

    Raises:
        InvalidSettingsError: describing the first violation found
    """
    if len(curve) < 2:
        raise InvalidSettingsError(f"A curve needs at least 2 points, got {len(curve)}")
    for p in curve:
        if not (0 <= p.x <= 255 and 0 <= p.y <= 255):
            raise InvalidSettingsError(f"Curve point {tuple(p)} lies outside [0,255]")
    if curve[0].x != 0 or curve[-1].x != 255:
        raise InvalidSettingsError(
            f"Curve must start at x=0 and end at x=255, got x={curve[0].x}..{curve[-1].x}")
    for a, b in zip(curve, curve[1:]):
        if b.x <= a.x:
            raise InvalidSettingsError(
                f"Curve x values must be strictly ascending ({a.x} then {b.x})")


def make_curve(points: Iterable) -> Tuple[CurvePoint, ...]:
    """
    Normalize a sequence of (x, y) pairs (tuples, lists or CurvePoints) into a
    validated, immutable curve.
    """
    try:
        pairs = [tuple(p) for p in points]
    except TypeError as e:
        raise InvalidSettingsError(f"Malformed curve: {e}") from e
    curve = []
    for pair in pairs:
        if len(pair) != 2:
            raise InvalidSettingsError(f"Curve point must be an (x, y) pair, got {pair!r}")
        curve.append(CurvePoint(_as_intensity(pair[0], "Curve x"),
                                _as_intensity(pair[1], "Curve y")))
    curve = tuple(curve)
    validate_curve(curve)
    return curve


def make_curve_set(curves: Optional[Mapping] = None) -> Mapping[str, Tuple[CurvePoint, ...]]:
    """
    Build a read-only channel -> curve mapping. Channels missing from
    'curves' fall back to the identity curve.
    """
    curves = curves if curves is not None else {}
    unknown = [ch for ch in curves if ch not in CHANNELS]
    if unknown:
        raise InvalidSettingsError(f"Unknown curve channel(s): {unknown}. Must be one of: {list(CHANNELS)}")
    return MappingProxyType({
        ch: make_curve(curves.get(ch, IDENTITY_CURVE)) for ch in CHANNELS
    })


# In-memory LUT cache keyed on curve content
_lut_cache: Dict[Tuple[CurvePoint, ...], np.ndarray] = {}
_lut_cache_lock = threading.Lock()


def build_lut(curve) -> np.ndarray:
    """
    Build the 256-entry lookup table of a curve.

    Each input intensity is linearly interpolated between its bracketing
    control points, rounded half up and clamped to [0,255]. Intensities that
    coincide with a control point map to that point's y exactly.

    Args:
        curve: Curve points; validated, a malformed curve raises
            InvalidSettingsError

    Returns:
        Read-only uint8 array of shape (256,)
    """
    curve = make_curve(curve)
    with _lut_cache_lock:
        cached = _lut_cache.get(curve)
    if cached is not None:
        return cached

    xs = np.array([p.x for p in curve], dtype=np.float64)
    ys = np.array([p.y for p in curve], dtype=np.float64)
    values = np.interp(np.arange(256, dtype=np.float64), xs, ys)
    lut = np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)
    lut.setflags(write=False)

    with _lut_cache_lock:
        if len(_lut_cache) >= LUT_CACHE_LIMIT:
            _lut_cache.clear()
        _lut_cache[curve] = lut
    return lut


# -------------------- Settings --------------------

@dataclass(frozen=True)
class TierParams:
    """Iteration budget of the quantizer for one fidelity tier."""

    sample_stride: int = 1  # cluster on every Nth pixel
    max_iterations: int = 30

    def __post_init__(self):
        if self.sample_stride < 1:
            raise InvalidSettingsError("sample_stride must be >= 1")
        if self.max_iterations < 1:
            raise InvalidSettingsError("max_iterations must be >= 1")


DEFAULT_TIER_PARAMS = MappingProxyType({
    FidelityTier.LOW: TierParams(sample_stride=4, max_iterations=8),
    FidelityTier.HIGH: TierParams(sample_stride=1, max_iterations=30),
})


@dataclass(frozen=True)
class ProcessingSettings:
    """
    Immutable snapshot of everything a pipeline run needs besides the pixels.
    Validated on construction; use with_changes() to derive a new snapshot.
    """

    levels: int = 10
    opacity: int = 50
    is_black_and_white: bool = False
    curves: Mapping[str, Tuple[CurvePoint, ...]] = field(default_factory=lambda: DEFAULT_CURVES)

    def __post_init__(self):
        errors = []

        if isinstance(self.levels, bool) or not isinstance(self.levels, (int, np.integer)):
            errors.append(f"'levels' must be an integer, got {self.levels!r}")
        elif not MIN_LEVELS <= self.levels <= MAX_LEVELS:
            errors.append(f"'levels' must be in [{MIN_LEVELS},{MAX_LEVELS}], got {self.levels}")

        if isinstance(self.opacity, bool) or not isinstance(self.opacity, (int, np.integer)):
            errors.append(f"'opacity' must be an integer, got {self.opacity!r}")
        elif not MIN_OPACITY <= self.opacity <= MAX_OPACITY:
            errors.append(f"'opacity' must be in [{MIN_OPACITY},{MAX_OPACITY}], got {self.opacity}")

        if not isinstance(self.is_black_and_white, (bool, np.bool_)):
            errors.append(f"'is_black_and_white' must be a boolean, got {self.is_black_and_white!r}")

        try:
            curves = make_curve_set(self.curves)
        except InvalidSettingsError as e:
            errors.append(f"'curves': {e}")

        if errors:
            raise InvalidSettingsError(
                "Invalid processing settings:\n" + "\n".join(f"  • {e}" for e in errors))

        object.__setattr__(self, 'levels', int(self.levels))
        object.__setattr__(self, 'opacity', int(self.opacity))
        object.__setattr__(self, 'is_black_and_white', bool(self.is_black_and_white))
        object.__setattr__(self, 'curves', curves)

    def __hash__(self):
        return hash((self.levels, self.opacity, self.is_black_and_white,
                     tuple(self.curves.items())))

    def with_changes(self, **changes) -> "ProcessingSettings":
        return replace(self, **changes)

    def with_curves(self, curves: Mapping) -> "ProcessingSettings":
        return replace(self, curves=curves)


@dataclass(frozen=True, eq=False)
class Artifacts:
    """
    Output of one pipeline run. Both buffers come from the same run and are
    read-only; a newer run replaces the whole value, never one buffer.
    """

    curved_only: np.ndarray
    final: np.ndarray
    sequence: int = 0
    tier: FidelityTier = FidelityTier.HIGH
    palette: Tuple[Tuple[int, int, int], ...] = ()

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) of both buffers."""
        return self.final.shape[1], self.final.shape[0]


# -------------------- Buffers --------------------

def _check_pixels(pixels: np.ndarray, name: str = "buffer"):
    if pixels is None:
        raise EmptyBufferError(f"{name} is missing")
    if isinstance(pixels, np.ndarray) and pixels.size == 0:
        raise EmptyBufferError(f"{name} has no pixels (shape {pixels.shape})")
    if not isinstance(pixels, np.ndarray) or pixels.ndim != 3 or pixels.shape[2] != 4:
        shape = getattr(pixels, 'shape', None)
        raise ValueError(f"{name} must be a (height, width, 4) RGBA array, got shape {shape}")
    if pixels.dtype != np.uint8:
        raise ValueError(f"{name} must hold uint8 values, got {pixels.dtype}")
    if pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise EmptyBufferError(f"{name} has no pixels ({pixels.shape[1]}x{pixels.shape[0]})")


def make_source_buffer(pixels, width: Optional[int] = None,
                       height: Optional[int] = None) -> np.ndarray:
    """
    Copy pixels into an immutable RGBA source buffer.

    Args:
        pixels: (height, width, 4) array-like, or a flat RGBA byte sequence
            when width and height are given
        width: Width in pixels for flat input
        height: Height in pixels for flat input

    Returns:
        Read-only uint8 array of shape (height, width, 4)

    Raises:
        EmptyBufferError: If pixels is None or has zero width or height
    """
    if pixels is None:
        raise EmptyBufferError("Source buffer is missing")
    if width is not None and height is not None:
        if width <= 0 or height <= 0:
            raise EmptyBufferError(f"Source buffer has no pixels ({width}x{height})")
        if isinstance(pixels, (bytes, bytearray, memoryview)):
            flat = np.frombuffer(pixels, dtype=np.uint8)
        else:
            flat = np.asarray(pixels, dtype=np.uint8).reshape(-1)
        if flat.size != width * height * 4:
            raise ValueError(
                f"Expected {width * height * 4} bytes for {width}x{height} RGBA, got {flat.size}")
        arr = flat.reshape(height, width, 4).copy()
    else:
        arr = np.array(pixels, dtype=np.uint8, copy=True)
    _check_pixels(arr, "Source buffer")
    arr.setflags(write=False)
    return arr


def _round_to_uint8(values: np.ndarray) -> np.ndarray:
    return np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)


# -------------------- Tone Mapper --------------------

def apply_curves(src: np.ndarray, lut_all: np.ndarray, lut_red: np.ndarray) -> np.ndarray:
    """
    Remap R, G and B through lut_all, then the red channel once more through
    lut_red. Alpha is passed through unchanged.
    """
    _check_pixels(src, "Source buffer")
    out = np.empty_like(src)
    out[..., :3] = lut_all[src[..., :3]]
    out[..., 0] = lut_red[out[..., 0]]
    out[..., 3] = src[..., 3]
    return out


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Float luma of every pixel, shape (height, width)."""
    return pixels[..., :3].astype(np.float64) @ LUMA_WEIGHTS


def desaturate(pixels: np.ndarray) -> np.ndarray:
    """Return a copy with R=G=B set to the rounded luma; alpha kept."""
    out = np.empty_like(pixels)
    out[..., :3] = _round_to_uint8(luminance(pixels))[..., None]
    out[..., 3] = pixels[..., 3]
    return out


# -------------------- Quantizer --------------------

class ColorQuantizer:
    """
    Reduce a buffer to at most 'levels' flat colors with k-means clustering.

    Clustering runs in RGB space, or on luma alone when 'grayscale' is set.
    Seeding is deterministic (centroids evenly spaced from the per-component
    minimum to the maximum of the sample), nearest-centroid ties go to the
    lowest index and empty clusters keep their previous centroid, so equal
    inputs always give byte-identical output.

    The tier only changes how centroids converge (sample stride, iteration
    cap); the final assignment always covers every pixel.
    """

    def __init__(self,
                 levels: int,
                 grayscale: bool = False,
                 tier: FidelityTier = FidelityTier.HIGH,
                 tier_params: Optional[Mapping[FidelityTier, TierParams]] = None,
                 tolerance: float = CONVERGENCE_TOLERANCE,
                 chunk_size: int = ASSIGN_CHUNK_SIZE):
        self.levels = levels
        self.grayscale = grayscale
        self.tier = tier
        self.params = (tier_params or DEFAULT_TIER_PARAMS)[tier]
        self.tolerance = tolerance
        self.chunk_size = chunk_size
        self.iterations = 0
        # distinct colors written by the last quantize() call
        self.colors: Tuple[Tuple[int, int, int], ...] = ()

    def features(self, pixels: np.ndarray) -> np.ndarray:
        """Flatten pixels to an (N, D) float array, D = 1 for grayscale, 3 otherwise."""
        if self.grayscale:
            return luminance(pixels).reshape(-1, 1)
        return pixels[..., :3].reshape(-1, 3).astype(np.float64)

    @staticmethod
    def initial_centroids(samples: np.ndarray, levels: int) -> np.ndarray:
        lo = samples.min(axis=0)
        hi = samples.max(axis=0)
        steps = np.linspace(0.0, 1.0, levels)[:, None]
        return lo + steps * (hi - lo)

    def assign(self, features: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """
        Index of the nearest centroid for every row of 'features'.
        Rows are processed in independent chunks to bound memory.
        """
        labels = np.empty(len(features), dtype=np.intp)
        for start in range(0, len(features), self.chunk_size):
            chunk = features[start:start + self.chunk_size]
            # argmin returns the first minimum, i.e. the lowest centroid index
            labels[start:start + len(chunk)] = cdist(chunk, centroids, 'sqeuclidean').argmin(axis=1)
        return labels

    @staticmethod
    def update_centroids(samples: np.ndarray, labels: np.ndarray,
                         centroids: np.ndarray) -> np.ndarray:
        k, dims = centroids.shape
        counts = np.bincount(labels, minlength=k)
        sums = np.stack(
            [np.bincount(labels, weights=samples[:, d], minlength=k) for d in range(dims)],
            axis=1)
        updated = centroids.copy()
        filled = counts > 0
        updated[filled] = sums[filled] / counts[filled, None]
        return updated

    def fit_features(self, features: np.ndarray) -> np.ndarray:
        samples = features[::self.params.sample_stride]
        centroids = self.initial_centroids(samples, self.levels)

        self.iterations = 0
        for _ in range(self.params.max_iterations):
            labels = self.assign(samples, centroids)
            updated = self.update_centroids(samples, labels, centroids)
            shift = float(np.abs(updated - centroids).max())
            centroids = updated
            self.iterations += 1
            if shift < self.tolerance:
                break

        logger.debug("k-means (%s tier, k=%d, %d samples) stopped after %d iteration(s)",
                     self.tier.value, self.levels, len(samples), self.iterations)
        return centroids

    def fit(self, src: np.ndarray) -> np.ndarray:
        """Converged centroids for 'src', shape (levels, 1) or (levels, 3)."""
        _check_pixels(src, "Source buffer")
        return self.fit_features(self.features(src))

    @staticmethod
    def palette_colors(centroids: np.ndarray) -> np.ndarray:
        """Rounded RGB colors of the centroids, shape (levels, 3)."""
        colors = _round_to_uint8(centroids)
        if colors.shape[1] == 1:
            colors = np.repeat(colors, 3, axis=1)
        return colors

    def quantize(self, src: np.ndarray) -> np.ndarray:
        _check_pixels(src, "Source buffer")
        features = self.features(src)
        centroids = self.fit_features(features)
        labels = self.assign(features, centroids)
        colors = self.palette_colors(centroids)
        self.colors = tuple(dict.fromkeys(tuple(int(c) for c in color) for color in colors[np.unique(labels)]))

        h, w = src.shape[:2]
        out = np.empty_like(src)
        out[..., :3] = colors[labels].reshape(h, w, 3)
        out[..., 3] = src[..., 3]
        return out


def quantize(src: np.ndarray, levels: int, grayscale: bool = False,
             tier: FidelityTier = FidelityTier.HIGH,
             tier_params: Optional[Mapping[FidelityTier, TierParams]] = None) -> np.ndarray:
    """
    Reduce 'src' to at most 'levels' colors (luma bands when 'grayscale').
    'levels' is expected to be validated already (see ProcessingSettings).
    """
    return ColorQuantizer(levels, grayscale, tier, tier_params).quantize(src)


# -------------------- Compositor --------------------

def blend(curved: np.ndarray, quantized: np.ndarray, opacity: int,
          grayscale: bool = False) -> np.ndarray:
    """
    Lay the quantized buffer over the curved one at 'opacity' percent.

    Per channel: round(curved * (1 - opacity/100) + quantized * opacity/100).
    Alpha is set to fully opaque. With 'grayscale' both layers are reduced to
    luma first, so every output pixel has R == G == B.

    Raises:
        DimensionMismatchError: If the buffers differ in size
    """
    _check_pixels(curved, "Curved buffer")
    _check_pixels(quantized, "Quantized buffer")
    if curved.shape != quantized.shape:
        raise DimensionMismatchError(
            f"Cannot blend {curved.shape[1]}x{curved.shape[0]} with "
            f"{quantized.shape[1]}x{quantized.shape[0]}")

    if grayscale:
        base = luminance(curved)[..., None]
        layer = luminance(quantized)[..., None]
    else:
        base = curved[..., :3].astype(np.float64)
        layer = quantized[..., :3].astype(np.float64)

    weight = opacity / 100.0
    mixed = base * (1.0 - weight) + layer * weight

    out = np.empty_like(curved)
    out[..., :3] = _round_to_uint8(mixed)
    out[..., 3] = 255
    return out


# -------------------- Pipeline --------------------

def _render(source: np.ndarray, settings: ProcessingSettings, tier: FidelityTier,
            tier_params: Optional[Mapping[FidelityTier, TierParams]] = None,
            sequence: int = 0) -> Artifacts:
    lut_all = build_lut(settings.curves[CHANNEL_ALL])
    lut_red = build_lut(settings.curves[CHANNEL_RED])

    curved = apply_curves(source, lut_all, lut_red)
    quantizer = ColorQuantizer(settings.levels, settings.is_black_and_white, tier, tier_params)
    quantized = quantizer.quantize(curved)
    final = blend(curved, quantized, settings.opacity, settings.is_black_and_white)

    curved.setflags(write=False)
    final.setflags(write=False)
    return Artifacts(curved_only=curved, final=final, sequence=sequence, tier=tier,
                     palette=quantizer.colors)


def process(source: np.ndarray, settings: ProcessingSettings,
            tier: FidelityTier = FidelityTier.HIGH,
            tier_params: Optional[Mapping[FidelityTier, TierParams]] = None) -> Artifacts:
    """
    Run the whole pipeline once: tone curves, quantization, blend.

    Args:
        source: RGBA source buffer (not modified)
        settings: Validated settings snapshot
        tier: Quantization fidelity
        tier_params: Optional per-tier iteration budgets

    Returns:
        Artifacts holding the curved-only and final buffers

    Raises:
        EmptyBufferError: If the source has no pixels
    """
    _check_pixels(source, "Source buffer")
    return _render(source, settings, tier, tier_params)


class StencilPipeline:
    """
    Owns the immutable source buffer of a session and the latest artifacts.

    render() is pure and may run on any thread; publish() keeps the
    artifacts with the highest sequence number, so a slow, older run can
    never replace the output of a newer one.
    """

    def __init__(self,
                 source,
                 tier_params: Optional[Mapping[FidelityTier, TierParams]] = None):
        self.source = make_source_buffer(source)
        self.tier_params = MappingProxyType(dict(tier_params or DEFAULT_TIER_PARAMS))
        self._artifacts: Optional[Artifacts] = None
        self._sequence = count(1)
        self._lock = threading.Lock()

    @property
    def size(self) -> Tuple[int, int]:
        return self.source.shape[1], self.source.shape[0]

    @property
    def artifacts(self) -> Optional[Artifacts]:
        """Most recent published artifacts, or None before the first run."""
        return self._artifacts

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._sequence)

    def render(self, settings: ProcessingSettings, tier: FidelityTier,
               sequence: Optional[int] = None) -> Artifacts:
        if sequence is None:
            sequence = self.next_sequence()
        started = time.perf_counter()
        artifacts = _render(self.source, settings, tier, self.tier_params, sequence)
        logger.debug("Run #%d (%s tier, levels=%d, opacity=%d, b&w=%s) took %.1f ms",
                     sequence, tier.value, settings.levels, settings.opacity,
                     settings.is_black_and_white, (time.perf_counter() - started) * 1000)
        return artifacts

    def publish(self, artifacts: Artifacts) -> bool:
        """
        Store 'artifacts' unless newer ones are already stored.

        Returns:
            True if stored, False if discarded as stale
        """
        with self._lock:
            current = self._artifacts
            if current is not None and current.sequence > artifacts.sequence:
                return False
            self._artifacts = artifacts
            return True

    def run(self, settings: ProcessingSettings,
            tier: FidelityTier = FidelityTier.HIGH) -> Artifacts:
        """Render synchronously and publish the result."""
        artifacts = self.render(settings, tier)
        self.publish(artifacts)
        return artifacts
