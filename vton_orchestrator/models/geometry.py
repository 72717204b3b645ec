"""Bounding box models in the 0-1000 normalized space."""

from enum import Enum

from pydantic import BaseModel, Field, computed_field, field_validator

NORMALIZED_SCALE = 1000.0


class ImageDimensions(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


class CropMode(str, Enum):
    EXPAND = "expand"
    FRAME = "frame"


class CropPolicy(BaseModel):
    """How the consensus box becomes a crop rectangle."""
    mode: CropMode = CropMode.EXPAND
    expansion_percent: float = Field(default=0.10, ge=0.0)


class AbsoluteBox(BaseModel):
    """Pixel rectangle, top-left origin."""
    x: int
    y: int
    width: int
    height: int

    def as_pil_box(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


class CandidateBox(BaseModel):
    """One detector's answer: [y_min, x_min, y_max, x_max] in 0-1000."""

    box: list[float] = Field(min_length=4, max_length=4)
    detector: str
    dimensions: ImageDimensions

    @field_validator("box")
    @classmethod
    def _within_range(cls, value: list[float]) -> list[float]:
        if any(v < 0 or v > NORMALIZED_SCALE for v in value):
            raise ValueError(f"box coordinates must lie in [0, 1000]: {value}")
        return value


class ConsensusBox(BaseModel):
    """Aggregate of candidate boxes, fixed to one image resolution."""

    box: list[float] = Field(min_length=4, max_length=4)
    dimensions: ImageDimensions
    sample_count: int

    @computed_field
    @property
    def area(self) -> float:
        y_min, x_min, y_max, x_max = self.box
        return max(0.0, y_max - y_min) * max(0.0, x_max - x_min)

    def to_absolute(self) -> AbsoluteBox:
        y_min, x_min, y_max, x_max = self.box
        w, h = self.dimensions.width, self.dimensions.height
        x0 = round(x_min / NORMALIZED_SCALE * w)
        y0 = round(y_min / NORMALIZED_SCALE * h)
        x1 = round(x_max / NORMALIZED_SCALE * w)
        y1 = round(y_max / NORMALIZED_SCALE * h)
        return AbsoluteBox(x=x0, y=y0, width=x1 - x0, height=y1 - y0)
