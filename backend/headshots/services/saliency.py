"""
Saliency-based region proposal
Used as a face-region proxy: the most salient square window inside a
weighted band of the frame.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


@dataclass
class Region:
    """Axis-aligned rectangle in image pixel coordinates"""
    x: int
    y: int
    width: int
    height: int

    @property
    def center(self):
        return self.x + self.width / 2, self.y + self.height / 2


class SaliencyDetector:
    """Proposes the most visually interesting square window of an image"""

    def __init__(self, max_side: int = 256, outside_weight: float = 0.3):
        self._max_side = max_side
        self._outside_weight = outside_weight

    def saliency_map(self, gray: np.ndarray) -> np.ndarray:
        """Saliency in [0, 1]; spectral residual with an edge-density fallback"""
        try:
            detector = cv2.saliency.StaticSaliencySpectralResidual_create()
            success, saliency = detector.computeSaliency(gray)
            if not success:
                raise RuntimeError("Saliency computation failed")
            return saliency.astype(np.float32)
        except (AttributeError, RuntimeError, cv2.error) as e:
            logger.debug(f"Spectral residual saliency unavailable ({e}), using edge density")
            edges = cv2.Canny(gray, 50, 150).astype(np.float32) / 255.0
            return cv2.GaussianBlur(edges, (9, 9), 0)

    def find_region(self, image: Image.Image, window: int, boost: Optional[Region] = None) -> Region:
        """
        Best square window of side `window` (full-resolution pixels).
        Saliency outside `boost` is down-weighted.
        """
        width, height = image.size
        window = max(1, min(window, width, height))
        scale = min(1.0, self._max_side / max(width, height))

        small = image.convert("RGB")
        if scale < 1.0:
            small = small.resize((max(1, round(width * scale)), max(1, round(height * scale))), Image.Resampling.BILINEAR)
        gray = cv2.cvtColor(np.asarray(small), cv2.COLOR_RGB2GRAY)
        saliency = np.nan_to_num(self.saliency_map(gray), nan=0.0, posinf=0.0, neginf=0.0)

        sh, sw = saliency.shape
        weights = np.full((sh, sw), self._outside_weight, dtype=np.float32)
        if boost is not None:
            bx0, by0 = int(boost.x * scale), int(boost.y * scale)
            bx1, by1 = int(np.ceil((boost.x + boost.width) * scale)), int(np.ceil((boost.y + boost.height) * scale))
            weights[max(0, by0):min(sh, by1), max(0, bx0):min(sw, bx1)] = 1.0
        else:
            weights[:, :] = 1.0
        weighted = saliency * weights

        side = max(1, min(int(round(window * scale)), sw, sh))
        integral = np.pad(weighted.cumsum(axis=0).cumsum(axis=1), ((1, 0), (1, 0)))
        sums = (
            integral[side:, side:]
            - integral[:-side, side:]
            - integral[side:, :-side]
            + integral[:-side, :-side]
        )

        if sums.size == 0 or float(sums.max()) <= 0.0:
            # Flat image: fall back to the statistically expected face spot
            x = (width - window) / 2
            y = height * 0.3 - window / 2
        else:
            iy, ix = np.unravel_index(int(np.argmax(sums)), sums.shape)
            x = ix / scale
            y = iy / scale

        x = int(round(min(max(x, 0), width - window)))
        y = int(round(min(max(y, 0), height - window)))
        return Region(x=x, y=y, width=window, height=window)
