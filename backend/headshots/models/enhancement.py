"""
Enhancement configuration models
"""
import re
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, field_validator


class Intensity(str, Enum):
    """Intensity of a remote enhancement step"""
    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UpscaleFactor(str, Enum):
    """Upscaling applied after enhancement"""
    OFF = "off"
    X2 = "2x"
    X4 = "4x"

    @property
    def scale(self) -> int:
        return {"off": 1, "2x": 2, "4x": 4}[self.value]


class Variant(str, Enum):
    """Output framing"""
    PORTRAIT = "portrait"
    SQUARE = "square"

    @property
    def aspect_ratio(self) -> float:
        return 4 / 5 if self is Variant.PORTRAIT else 1.0

    @property
    def suffix(self) -> str:
        return "4x5" if self is Variant.PORTRAIT else "square"


HEX_COLOR = re.compile(r"^#?[0-9a-fA-F]{6}$")


class EnhancementConfig(BaseModel):
    """Enhancement options read at pipeline-invocation time"""
    output_portrait: bool = Field(True, description="Produce the 4:5 portrait variant")
    output_square: bool = Field(True, description="Produce the 1:1 square variant")
    face_enhancement: Intensity = Intensity.MEDIUM
    skin_smoothing: Intensity = Intensity.OFF
    upscale: UpscaleFactor = UpscaleFactor.OFF
    background_removal: bool = True
    background_color: Optional[str] = Field(None, description="Hex colour composited onto the transparent result")

    @field_validator("background_color")
    @classmethod
    def validate_background_color(cls, v):
        if v is None or v == "":
            return None
        if not HEX_COLOR.match(v):
            raise ValueError("background_color must be a hex colour like #FFFFFF")
        return "#" + v.lstrip("#").upper()

    @property
    def variants(self) -> list:
        enabled = []
        if self.output_portrait:
            enabled.append(Variant.PORTRAIT)
        if self.output_square:
            enabled.append(Variant.SQUARE)
        return enabled

    @property
    def background_rgb(self) -> Optional[Tuple[int, int, int]]:
        if not self.background_color:
            return None
        clean = self.background_color.lstrip("#")
        return tuple(int(clean[i:i + 2], 16) for i in (0, 2, 4))

    def merged(self, **changes) -> "EnhancementConfig":
        """Return a copy with the given fields replaced, validated"""
        data = self.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        return EnhancementConfig(**data)


class EnhancementConfigUpdate(BaseModel):
    """Partial configuration update"""
    output_portrait: Optional[bool] = None
    output_square: Optional[bool] = None
    face_enhancement: Optional[Intensity] = None
    skin_smoothing: Optional[Intensity] = None
    upscale: Optional[UpscaleFactor] = None
    background_removal: Optional[bool] = None
    background_color: Optional[str] = None
