"""
Preprocessing Pipeline

Turns stored image bytes into the batched tensor a model expects:
float32, shape [1, height, width, channels].

The recipe is the descriptor's preprocessing_steps, applied in order:
- resize:    bilinear to (width, height), aspect ratio not preserved
- normalize: scale to 0..1, then (x - mean) / std (ImageNet stats for RGB)
- denoise:   3x3 median filter with edge-replicate borders
- augment:   no-op at serving time
"""

from io import BytesIO
from typing import Optional

import cv2
import numpy as np
import pydicom
from PIL import Image, UnidentifiedImageError
from pydicom.errors import InvalidDicomError

from errors import ImageDecodeFailed, ShapeMismatch
from model_registry import ModelDescriptor, PreprocessingStep

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)
GRAY_MEAN = np.array([0.5], dtype=np.float32)
GRAY_STD = np.array([0.5], dtype=np.float32)

DICOM_PREAMBLE_MAGIC = b"DICM"


def is_dicom(data: bytes, filename: Optional[str] = None) -> bool:
    if filename and filename.lower().endswith((".dicom", ".dcm")):
        return True
    return data[128:132] == DICOM_PREAMBLE_MAGIC


def _decode_dicom(data: bytes) -> np.ndarray:
    # Compressed transfer syntaxes without a usable decoder raise RuntimeError
    try:
        ds = pydicom.dcmread(BytesIO(data))
        pixels = ds.pixel_array.astype(np.float32)
    except (InvalidDicomError, AttributeError, KeyError, ValueError, TypeError,
            RuntimeError, NotImplementedError) as e:
        raise ImageDecodeFailed(f"Could not read DICOM pixel data: {e}") from e

    # Multi-frame studies: first frame only
    if pixels.ndim == 4 or (pixels.ndim == 3 and pixels.shape[-1] not in (3, 4)):
        pixels = pixels[0]
    if pixels.ndim == 3 and pixels.shape[-1] == 4:
        pixels = pixels[..., :3]

    p_min, p_max = float(pixels.min()), float(pixels.max())
    if p_max - p_min > 0:
        pixels = (pixels - p_min) / (p_max - p_min) * 255.0
    else:
        pixels = np.zeros_like(pixels)
    return pixels


def _decode_raster(data: bytes, channels: int) -> np.ndarray:
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            img = img.convert("L" if channels == 1 else "RGB")
            return np.asarray(img, dtype=np.float32)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ImageDecodeFailed(f"Could not decode image: {e}") from e


def _match_channels(pixels: np.ndarray, channels: int) -> np.ndarray:
    if pixels.ndim == 2:
        pixels = pixels[..., np.newaxis]
    if pixels.shape[-1] == channels:
        return pixels
    if channels == 3 and pixels.shape[-1] == 1:
        return np.repeat(pixels, 3, axis=-1)
    if channels == 1 and pixels.shape[-1] == 3:
        return cv2.cvtColor(pixels, cv2.COLOR_RGB2GRAY)[..., np.newaxis]
    raise ImageDecodeFailed(f"Cannot convert {pixels.shape[-1]}-channel image to {channels} channels")


def decode(data: bytes, channels: int, filename: Optional[str] = None) -> np.ndarray:
    """Decode bytes to a float32 HWC array in 0..255 with the requested channel count."""
    if not data:
        raise ImageDecodeFailed("Image is empty")
    if is_dicom(data, filename):
        pixels = _decode_dicom(data)
    else:
        pixels = _decode_raster(data, channels)
    return _match_channels(pixels, channels).astype(np.float32)


def resize(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    resized = cv2.resize(pixels, (width, height), interpolation=cv2.INTER_LINEAR)
    # cv2 drops a trailing singleton channel axis
    if resized.ndim == 2:
        resized = resized[..., np.newaxis]
    return resized


def normalize(pixels: np.ndarray) -> np.ndarray:
    if pixels.shape[-1] == 3:
        mean, std = IMAGENET_MEAN, IMAGENET_STD
    else:
        mean, std = GRAY_MEAN, GRAY_STD
    return (pixels / 255.0 - mean) / std


def denoise(pixels: np.ndarray) -> np.ndarray:
    filtered = cv2.medianBlur(np.ascontiguousarray(pixels, dtype=np.float32), 3)
    if filtered.ndim == 2:
        filtered = filtered[..., np.newaxis]
    return filtered


class PreprocessingPipeline:
    """Applies a descriptor's recipe to raw image bytes."""

    def run(self, data: bytes, descriptor: ModelDescriptor, filename: Optional[str] = None) -> np.ndarray:
        shape = descriptor.input_shape
        pixels = decode(data, shape.channels, filename)

        for step in descriptor.preprocessing_steps:
            if step is PreprocessingStep.RESIZE:
                pixels = resize(pixels, shape.width, shape.height)
            elif step is PreprocessingStep.NORMALIZE:
                pixels = normalize(pixels)
            elif step is PreprocessingStep.DENOISE:
                pixels = denoise(pixels)
            elif step is PreprocessingStep.AUGMENT:
                continue

        tensor = pixels[np.newaxis, ...].astype(np.float32)
        expected = shape.tensor_shape()
        if tensor.shape != expected:
            raise ShapeMismatch(expected, tensor.shape)
        return tensor
