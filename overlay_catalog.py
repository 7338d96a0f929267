"""Built-in overlay catalog: glasses, hats and masks keyed by overlay id."""
import os

from overlay_models import (
    AnchorSpec, OverlayConfig, OverlayConstraints, OverlayPosition,
    OverlayRendering, OverlayType, ScalingSpec, Z_ORDER,
)
from try_on_settings import ASSET_DIR

# Landmark anchors per overlay type.
EYE_LEFT_UPPER, EYE_RIGHT_UPPER = 159, 386
FOREHEAD_TOP, FOREHEAD_LEFT, FOREHEAD_RIGHT = 10, 108, 337
NOSE_TIP, CHEEK_LEFT, CHEEK_RIGHT = 1, 234, 454

GLASSES_ANCHOR = AnchorSpec(primary=EYE_LEFT_UPPER, secondary=(EYE_RIGHT_UPPER,))
GLASSES_SCALING = ScalingSpec(base=1.0, width_factor=1.0, height_factor=0.35)

# Hats sit above the forehead and are wider than the face box.
HAT_ANCHOR = AnchorSpec(primary=FOREHEAD_TOP, secondary=(FOREHEAD_LEFT, FOREHEAD_RIGHT), offset_y=-0.1)
HAT_SCALING = ScalingSpec(base=1.0, width_factor=1.1, height_factor=0.6)

MASK_ANCHOR = AnchorSpec(primary=NOSE_TIP, secondary=(CHEEK_LEFT, CHEEK_RIGHT), offset_y=0.05)
MASK_SCALING = ScalingSpec(base=1.0, width_factor=0.85, height_factor=0.55)

DEFAULT_CONSTRAINTS = OverlayConstraints()

# (id suffix, name, description, default opacity)
GLASSES = (
    ("classic", "Classic Rectangular", "Timeless rectangular frames", 0.9),
    ("round", "Round Vintage", "Vintage round frames", 0.9),
    ("aviator", "Aviator Sunglasses", "Classic aviator style", 0.8),
    ("cat-eye", "Cat Eye", "Elegant cat-eye frames", 0.9),
    ("geometric", "Geometric Modern", "Modern angular frames", 0.9),
)

HATS = (
    ("baseball", "Baseball Cap", "Classic baseball cap with team logo", 0.9),
    ("fedora", "Fedora", "Classic fedora hat for a sophisticated look", 0.9),
    ("cowboy", "Cowboy Hat", "Western cowboy hat for a rugged appearance", 0.9),
    ("beanie", "Beanie", "Warm beanie with pom pom for cold weather", 0.9),
)

MASKS = (
    ("surgical", "Surgical Mask", "Plain surgical face mask", 0.95),
)

_LAYOUT = {
    OverlayType.GLASSES: ("glasses", GLASSES_ANCHOR, GLASSES_SCALING,
                          OverlayPosition(0.5, 0.4, 0.3, 0.15)),
    OverlayType.HAT: ("hats", HAT_ANCHOR, HAT_SCALING,
                      OverlayPosition(0.5, 0.15, 0.4, 0.25)),
    OverlayType.MASK: ("masks", MASK_ANCHOR, MASK_SCALING,
                       OverlayPosition(0.5, 0.65, 0.3, 0.2)),
}

_PREFIX = {OverlayType.GLASSES: "glasses", OverlayType.HAT: "hat", OverlayType.MASK: "mask"}


def make_config(overlay_type, key, name, description="", opacity=0.9, asset_dir=None):
    folder, anchor, scaling, pos = _LAYOUT[overlay_type]
    base = asset_dir or ASSET_DIR
    return OverlayConfig(
        id=f"{_PREFIX[overlay_type]}-{key}",
        type=overlay_type,
        name=name,
        description=description,
        image=os.path.join(base, folder, f"{key}.png"),
        anchor=anchor,
        default_position=OverlayPosition(pos.x, pos.y, pos.width, pos.height,
                                         z_index=Z_ORDER[overlay_type]),
        default_rendering=OverlayRendering(opacity=opacity, blend_mode="normal", visible=True),
        scaling=scaling,
        constraints=DEFAULT_CONSTRAINTS,
    )


def build_catalog(asset_dir=None):
    catalog = {}
    for overlay_type, entries in ((OverlayType.GLASSES, GLASSES),
                                  (OverlayType.HAT, HATS),
                                  (OverlayType.MASK, MASKS)):
        for key, name, desc, opacity in entries:
            cfg = make_config(overlay_type, key, name, desc, opacity, asset_dir)
            catalog[cfg.id] = cfg
    return catalog


CATALOG = build_catalog()


def get_config(overlay_id, catalog=None):
    return (catalog if catalog is not None else CATALOG).get(overlay_id)


def configs_by_type(overlay_type, catalog=None):
    cat = catalog if catalog is not None else CATALOG
    return [c for c in cat.values() if c.type is OverlayType(overlay_type)]
