"""
Application configuration
"""
from pathlib import Path
from typing import Dict, List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Queue
    QUEUE_FILE: Path = Path.home() / ".headshots" / "processing_queue.json"
    MAX_RETRIES: int = 3
    BACKOFF_BASE_SECONDS: float = 1.0  # wait = 2 ** retries * base
    FAIL_FAST_ON_INPUT_ERRORS: bool = False
    PROCESSING_ENABLED: bool = True
    REMOTE_API_TOKEN: str = ""
    WATCH_FOLDER: str = ""

    # Remote enhancement service (Replicate-style prediction API)
    REMOTE_BASE_URL: str = "https://api.replicate.com/v1"
    REMOTE_REQUEST_TIMEOUT_SECONDS: float = 60.0
    DOWNLOAD_TIMEOUT_SECONDS: float = 30.0
    POLL_INTERVAL_SECONDS: float = 0.5
    MAX_POLL_ATTEMPTS: int = 120
    MIN_REQUEST_INTERVAL_SECONDS: float = 2.0
    MAX_UPLOAD_DIMENSION: int = 2048
    UPSCALE_INPUT_MAX_DIMENSION: int = 1024

    FACE_MODEL_VERSION: str = "7de2ea26c616d5bf2245ad0d5e24f0ff9a6204578a5c876db53142edd9d2cd56"  # sczhou/codeformer
    SKIN_MODEL_VERSION: str = "7de2ea26c616d5bf2245ad0d5e24f0ff9a6204578a5c876db53142edd9d2cd56"  # sczhou/codeformer
    UPSCALE_MODEL_VERSION: str = "f121d640bd286e1fdc67f9799164c1d5be36ff74576ee11c803ae5b665dd46aa"  # nightmareai/real-esrgan
    BACKGROUND_MODEL_VERSION: str = "95fcc2a26d3899cd6c2691c900465aaeff466285a65c14638cc5f36f34befaf1"  # lucataco/remove-bg

    # Intensity -> model fidelity (lower fidelity = stronger effect)
    FACE_FIDELITY: Dict[str, float] = {"low": 0.9, "medium": 0.7, "high": 0.5}
    SKIN_FIDELITY: Dict[str, float] = {"low": 0.8, "medium": 0.6, "high": 0.4}
    SKIN_SMOOTHING_MIN_DELTA: float = 0.05

    # Face framing heuristics. Tuned empirically, not derived.
    FACE_WINDOW_FRACTION: float = 0.25
    FACE_HEIGHT_FACTOR: float = 1.3
    PORTRAIT_FACE_MULTIPLIER: float = 4.0
    SQUARE_FACE_MULTIPLIER: float = 3.5
    PORTRAIT_FACE_POSITION: float = 0.30
    SQUARE_FACE_POSITION: float = 0.36
    SALIENCY_MAX_SIDE: int = 256

    # Colour correction
    WB_SAMPLE_SIDE: int = 256
    WB_HIGHLIGHT_FRACTION: float = 0.10
    BRIGHT_IMAGE_THRESHOLD: float = 230.0  # highlight luminance, 0-255
    WB_MAX_CORRECTION_BRIGHT: float = 0.05
    WB_MAX_CORRECTION: float = 0.15
    SATURATION_BOOST: float = 1.08
    BRIGHTNESS_BOOST: float = 1.02
    SHARPEN_RADIUS: float = 0.8
    SHARPEN_PERCENT: int = 50
    SHARPEN_THRESHOLD: int = 2
    JPEG_QUALITY: int = 92

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
