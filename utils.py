"""
Utility functions for the stencil application: image import/export around
the pixel buffers of the core, and curve (de)serialization.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
from PIL import Image

from stencil_lib import make_curve_set, make_source_buffer

__all__ = [
    'DEFAULT_MAX_DIMENSION',
    'fit_dimensions',
    'load_source_image',
    'pixels_from_image',
    'image_from_pixels',
    'save_pixels',
    'validate_image_file',
    'get_image_info',
    'curves_from_json',
    'curves_to_json',
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 1200

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}


def fit_dimensions(orig_w: int, orig_h: int, max_dimension: int = DEFAULT_MAX_DIMENSION) -> Tuple[int, int]:
    """
    Scale dimensions so the longer side is at most max_dimension,
    keeping the aspect ratio. Images that already fit are left alone.

    Args:
        orig_w: Original width
        orig_h: Original height
        max_dimension: Cap for the longer side

    Returns:
        Tuple of (target_width, target_height)
    """
    if orig_w <= max_dimension and orig_h <= max_dimension:
        return orig_w, orig_h
    if orig_w > orig_h:
        target_w = max_dimension
        target_h = max(1, int(orig_h * max_dimension / orig_w))
    else:
        target_h = max_dimension
        target_w = max(1, int(orig_w * max_dimension / orig_h))
    return target_w, target_h


def pixels_from_image(image: Image.Image) -> np.ndarray:
    """Read-only RGBA source buffer from a PIL image."""
    if image.mode != 'RGBA':
        image = image.convert('RGBA')
    return make_source_buffer(np.asarray(image, dtype=np.uint8))


def image_from_pixels(pixels: np.ndarray) -> Image.Image:
    return Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))


def load_source_image(filepath: Union[str, Path],
                      max_dimension: int = DEFAULT_MAX_DIMENSION) -> np.ndarray:
    """
    Decode an image file into the source buffer of a session.

    Args:
        filepath: Path to image file (PNG, JPG, etc.)
        max_dimension: Cap for the longer side; larger images are resized

    Returns:
        Read-only RGBA uint8 array of shape (height, width, 4)

    Raises:
        ValueError: If the file cannot be decoded
    """
    try:
        with Image.open(filepath) as img:
            image = img.convert('RGBA')
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"Failed to load image '{filepath}': {e}") from e

    target = fit_dimensions(image.width, image.height, max_dimension)
    if target != image.size:
        logger.debug(f"Resizing {image.width}x{image.height} -> {target[0]}x{target[1]}")
        image = image.resize(target, Image.Resampling.LANCZOS)
    return pixels_from_image(image)


def save_pixels(pixels: np.ndarray, filepath: Union[str, Path],
                fmt: Optional[str] = None, quality: int = 80) -> Path:
    """
    Encode a pixel buffer to disk.

    Args:
        pixels: RGBA buffer
        filepath: Destination path (parent directories are created)
        fmt: Pillow format name; inferred from the extension if None
        quality: JPEG quality

    Returns:
        Path of the written file
    """
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    image = image_from_pixels(pixels)
    fmt = (fmt or Image.registered_extensions().get(path.suffix.lower(), 'PNG')).upper()
    if fmt in ('JPEG', 'JPG'):
        # JPEG has no alpha channel
        image.convert('RGB').save(path, 'JPEG', quality=quality)
    else:
        image.save(path, fmt)
    return path


def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if valid image file
    """
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.exists(filepath)


def get_image_info(filepath: str) -> Optional[Dict]:
    """
    Get basic image information.

    Returns:
        Dictionary with width, height, mode, format; None if unreadable
    """
    try:
        with Image.open(filepath) as img:
            return {
                'width': img.width,
                'height': img.height,
                'mode': img.mode,
                'format': img.format
            }
    except OSError as e:
        logger.warning(f"Error getting image info: {e}")
        return None


def curves_from_json(data: Mapping[str, List]) -> Mapping:
    """Curve set from {"all": [[x, y], ...], "red": [...]}."""
    return make_curve_set(data)


def curves_to_json(curves: Mapping) -> Dict[str, List[List[int]]]:
    return {ch: [[int(p[0]), int(p[1])] for p in curve] for ch, curve in curves.items()}
