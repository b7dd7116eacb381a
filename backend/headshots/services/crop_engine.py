"""
Crop/colour engine
Face-anchored framing for a target aspect ratio plus conservative colour
correction (highlight-based white balance, tone lift, unsharp mask).
"""
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageEnhance, ImageFilter, ImageOps

from headshots.core.config import Settings, settings as default_settings
from headshots.models.enhancement import Variant
from headshots.services.saliency import Region, SaliencyDetector

logger = logging.getLogger(__name__)

IDENTITY_GAINS = (1.0, 1.0, 1.0)


@dataclass
class FaceGeometry:
    """Face position estimate for one source image, in display coordinates"""
    image_width: int
    image_height: int
    face_center_x: float
    face_center_y: float
    face_height: float
    region: Optional[Region] = None
    fallback: bool = False


@dataclass
class CropBox:
    x: int
    y: int
    width: int
    height: int
    clamped: bool = False

    def as_box(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.x + self.width, self.y + self.height


def compute_crop(
    geometry: FaceGeometry,
    aspect_ratio: float,
    face_multiplier: float,
    face_position: float,
) -> CropBox:
    """
    Crop rectangle for `aspect_ratio` (width / height).

    The crop is `face_multiplier` face heights tall, centred horizontally on
    the face, with the face centre `face_position` of the crop height from
    the top. The box is shrunk to fit the image and then clamped inside it.
    """
    image_w, image_h = geometry.image_width, geometry.image_height

    crop_h = min(geometry.face_height * face_multiplier, image_h)
    crop_w = crop_h * aspect_ratio
    if crop_w > image_w:
        crop_w = image_w
        crop_h = crop_w / aspect_ratio
    if crop_h > image_h:
        crop_h = image_h
        crop_w = crop_h * aspect_ratio

    width = max(1, min(image_w, int(round(crop_w))))
    height = max(1, min(image_h, int(round(crop_h))))
    if aspect_ratio == 1:
        width = height = min(width, height)

    x = int(round(geometry.face_center_x - width / 2))
    y = int(round(geometry.face_center_y - height * face_position))

    clamped_x = min(max(x, 0), image_w - width)
    clamped_y = min(max(y, 0), image_h - height)
    clamped = (clamped_x, clamped_y) != (x, y)
    if clamped_x != x:
        side = "left" if x < 0 else "right"
        logger.warning(f"Face near {side} edge, shifting crop by {clamped_x - x}px")
    if clamped_y != y:
        side = "top" if y < 0 else "bottom"
        logger.info(f"Crop hits {side} edge, shifting by {clamped_y - y}px")

    return CropBox(x=clamped_x, y=clamped_y, width=width, height=height, clamped=clamped)


def white_balance_gains(
    image: Image.Image,
    sample_side: int = 256,
    highlight_fraction: float = 0.10,
    bright_threshold: float = 230.0,
    max_correction_bright: float = 0.05,
    max_correction: float = 0.15,
) -> Tuple[float, float, float]:
    """
    Per-channel gains that neutralise the colour of the brightest pixels.

    Gains are clamped to +/- max_correction_bright when the highlights are
    already near white (studio backdrop), +/- max_correction otherwise.
    """
    sample = image.convert("RGB")
    sample.thumbnail((sample_side, sample_side))
    pixels = np.asarray(sample, dtype=np.float32).reshape(-1, 3)
    if pixels.size == 0:
        return IDENTITY_GAINS

    luminance = pixels @ np.array([0.299, 0.587, 0.114], dtype=np.float32)
    count = max(1, int(len(luminance) * highlight_fraction))
    brightest = np.argpartition(luminance, -count)[-count:]
    channel_means = pixels[brightest].mean(axis=0)
    highlight_luminance = float(luminance[brightest].mean())

    if float(channel_means.min()) <= 0.0:
        return IDENTITY_GAINS

    neutral = float(channel_means.mean())
    gains = neutral / channel_means
    limit = max_correction_bright if highlight_luminance > bright_threshold else max_correction
    gains = np.clip(gains, 1.0 - limit, 1.0 + limit)
    return tuple(float(g) for g in gains)


def apply_gains(image: Image.Image, gains: Tuple[float, float, float]) -> Image.Image:
    """Diagonal 3x3 colour transform"""
    r, g, b = gains
    matrix = (
        r, 0.0, 0.0, 0.0,
        0.0, g, 0.0, 0.0,
        0.0, 0.0, b, 0.0,
    )
    return image.convert("RGB", matrix)


class CropEngine:
    """Face-aware framing and colour correction for one working image"""

    def __init__(self, config: Optional[Settings] = None, detector: Optional[SaliencyDetector] = None):
        self._config = config or default_settings
        self._detector = detector or SaliencyDetector(max_side=self._config.SALIENCY_MAX_SIDE)

    def _fallback_geometry(self, width: int, height: int) -> FaceGeometry:
        window = min(width, height) * self._config.FACE_WINDOW_FRACTION
        return FaceGeometry(
            image_width=width,
            image_height=height,
            face_center_x=width / 2,
            face_center_y=height * 0.3,
            face_height=window * self._config.FACE_HEIGHT_FACTOR,
            fallback=True,
        )

    def geometry_for(self, image: Image.Image) -> FaceGeometry:
        """Face geometry for an already orientation-normalised image"""
        width, height = image.size
        window = int(round(min(width, height) * self._config.FACE_WINDOW_FRACTION))
        # Faces sit in the upper part of the frame, roughly centred
        boost = Region(x=int(width * 0.2), y=0, width=int(width * 0.6), height=int(height * 0.7))
        try:
            region = self._detector.find_region(image, window, boost)
        except Exception as e:
            logger.warning(f"Saliency detection failed, using centred framing: {e}")
            return self._fallback_geometry(width, height)

        center_x, center_y = region.center
        return FaceGeometry(
            image_width=width,
            image_height=height,
            face_center_x=center_x,
            face_center_y=center_y,
            face_height=region.width * self._config.FACE_HEIGHT_FACTOR,
            region=region,
        )

    def detect_face(self, image_path: str) -> FaceGeometry:
        """Open, normalise orientation and estimate the face position"""
        with Image.open(image_path) as raw:
            try:
                oriented = ImageOps.exif_transpose(raw)
            except Exception as e:
                logger.warning(f"Could not read orientation metadata for {image_path}: {e}")
                oriented = raw.copy()
            if oriented.size != raw.size:
                logger.info(f"Re-oriented {image_path}: {raw.size} -> {oriented.size}")
            geometry = self.geometry_for(oriented)

        logger.info(
            f"Face estimate: center=({geometry.face_center_x:.0f}, {geometry.face_center_y:.0f}) "
            f"height={geometry.face_height:.0f} image={geometry.image_width}x{geometry.image_height}"
        )
        return geometry

    def _framing(self, variant: Variant) -> Tuple[float, float]:
        if variant is Variant.SQUARE:
            return self._config.SQUARE_FACE_MULTIPLIER, self._config.SQUARE_FACE_POSITION
        return self._config.PORTRAIT_FACE_MULTIPLIER, self._config.PORTRAIT_FACE_POSITION

    def _color_gains(self, image: Image.Image) -> Tuple[float, float, float]:
        try:
            return white_balance_gains(
                image,
                sample_side=self._config.WB_SAMPLE_SIDE,
                highlight_fraction=self._config.WB_HIGHLIGHT_FRACTION,
                bright_threshold=self._config.BRIGHT_IMAGE_THRESHOLD,
                max_correction_bright=self._config.WB_MAX_CORRECTION_BRIGHT,
                max_correction=self._config.WB_MAX_CORRECTION,
            )
        except Exception as e:
            logger.warning(f"White balance estimate failed, leaving colours unchanged: {e}")
            return IDENTITY_GAINS

    def crop_and_correct(self, input_path: str, output_path: str, geometry: FaceGeometry, variant: Variant) -> CropBox:
        """Crop for the variant's aspect ratio, colour-correct and write a JPEG"""
        with Image.open(input_path) as raw:
            try:
                image = ImageOps.exif_transpose(raw)
            except Exception as e:
                logger.warning(f"Could not read orientation metadata for {input_path}: {e}")
                image = raw.copy()
            image = image.convert("RGB")

        if image.size != (geometry.image_width, geometry.image_height):
            logger.info(
                f"Image is {image.size[0]}x{image.size[1]}, geometry was computed for "
                f"{geometry.image_width}x{geometry.image_height}; recomputing"
            )
            geometry = self.geometry_for(image)

        multiplier, position = self._framing(variant)
        box = compute_crop(geometry, variant.aspect_ratio, multiplier, position)
        logger.info(
            f"Cropping {variant.value}: {box.width}x{box.height} at ({box.x}, {box.y}) - "
            f"face center ({geometry.face_center_x:.0f}, {geometry.face_center_y:.0f})"
        )

        cropped = image.crop(box.as_box())
        gains = self._color_gains(cropped)
        corrected = apply_gains(cropped, gains)
        corrected = ImageEnhance.Color(corrected).enhance(self._config.SATURATION_BOOST)
        corrected = ImageEnhance.Brightness(corrected).enhance(self._config.BRIGHTNESS_BOOST)
        corrected = corrected.filter(
            ImageFilter.UnsharpMask(
                radius=self._config.SHARPEN_RADIUS,
                percent=self._config.SHARPEN_PERCENT,
                threshold=self._config.SHARPEN_THRESHOLD,
            )
        )
        corrected.save(output_path, format="JPEG", quality=self._config.JPEG_QUALITY, optimize=True)
        return box
