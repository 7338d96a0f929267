from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple


class OverlayType(str, Enum):
    GLASSES = "glasses"
    HAT = "hat"
    MASK = "mask"


# Draw order; higher renders on top.
Z_ORDER = {
    OverlayType.MASK: 1,
    OverlayType.GLASSES: 2,
    OverlayType.HAT: 3,
}

# Face region an overlay type occupies; one overlay per region.
ANCHOR_REGION = {
    OverlayType.GLASSES: "eyes",
    OverlayType.HAT: "head",
    OverlayType.MASK: "lower_face",
}

BLEND_MODES = ("normal", "multiply", "screen", "lighten", "darken", "add")


@dataclass(frozen=True)
class AnchorSpec:
    primary: int
    secondary: Tuple[int, ...] = ()
    offset_x: float = 0.0
    offset_y: float = 0.0


@dataclass(frozen=True)
class ScalingSpec:
    base: float = 1.0
    width_factor: float = 1.0
    height_factor: float = 1.0


@dataclass(frozen=True)
class OverlayConstraints:
    min_scale: float = 0.5
    max_scale: float = 2.0
    min_opacity: float = 0.3
    max_opacity: float = 1.0
    max_rotation: float = 45.0


@dataclass(frozen=True)
class OverlayPosition:
    x: float
    y: float
    width: float
    height: float
    rotation: float = 0.0
    scale: float = 1.0
    z_index: int = 0

    def to_dict(self):
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height,
                "rotation": self.rotation, "scale": self.scale, "zIndex": self.z_index}


@dataclass(frozen=True)
class OverlayRendering:
    opacity: float = 1.0
    blend_mode: str = "normal"
    visible: bool = True

    def to_dict(self):
        return {"opacity": self.opacity, "blendMode": self.blend_mode, "visible": self.visible}


@dataclass(frozen=True)
class OverlayConfig:
    id: str
    type: OverlayType
    name: str
    image: str
    anchor: AnchorSpec
    default_position: OverlayPosition
    default_rendering: OverlayRendering = OverlayRendering()
    scaling: ScalingSpec = ScalingSpec()
    constraints: OverlayConstraints = OverlayConstraints()
    description: str = ""

    @property
    def region(self):
        return ANCHOR_REGION[self.type]

    @property
    def z_index(self):
        return Z_ORDER[self.type]

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "image": self.image,
            "description": self.description,
            "region": self.region,
            "zIndex": self.z_index,
            "defaultRendering": self.default_rendering.to_dict(),
        }


@dataclass
class ActiveOverlay:
    config: OverlayConfig
    position: OverlayPosition
    rendering: OverlayRendering
    enabled: bool = True
    last_update: float = 0.0
    confidence: float = 0.0
    placed: bool = field(default=False)

    @property
    def id(self):
        return self.config.id

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.config.type.value,
            "name": self.config.name,
            "enabled": self.enabled,
            "placed": self.placed,
            "confidence": round(self.confidence, 4),
            "position": self.position.to_dict(),
            "rendering": self.rendering.to_dict(),
            "lastUpdate": self.last_update,
        }


def default_position_for(config: OverlayConfig, z_index: Optional[int] = None) -> OverlayPosition:
    return replace(config.default_position,
                   z_index=Z_ORDER[config.type] if z_index is None else z_index)
