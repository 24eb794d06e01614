"""Geographic primitives."""

from pydantic import BaseModel, ConfigDict, Field


class Location(BaseModel):
    """Geographic location."""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)
