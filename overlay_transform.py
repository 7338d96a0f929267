"""Landmark-anchored placement of overlays.

Maps an overlay's anchor landmarks, the face box and the display size to an
``OverlayPosition``. Pure: no shared state is read or written here.
"""
import math
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import numpy as np

from face_landmarks import (
    BoundingBox, FacialLandmarks, clamp, compute_bounding_box, mirror_bounding_box, to_img_px,
)
from overlay_models import OverlayConfig, OverlayPosition, Z_ORDER, default_position_for
from try_on_settings import DEFAULT_FRAME_H, DEFAULT_FRAME_W, VISIBILITY_THRESHOLD

W_PRIMARY_CONF = 0.7
W_SECONDARY_CONF = 0.3
POSITION_MARGIN = 0.1


class DimensionUnavailable(Exception):
    """No display size could be resolved for this frame."""


@dataclass(frozen=True)
class RenderContext:
    canvas_w: int = 0
    canvas_h: int = 0
    video_w: int = 0
    video_h: int = 0
    track_w: int = 0
    track_h: int = 0
    mirrored: bool = False
    bounding_box: Optional[BoundingBox] = None
    default_size: Optional[Tuple[int, int]] = (DEFAULT_FRAME_W, DEFAULT_FRAME_H)


@dataclass(frozen=True)
class Placement:
    position: OverlayPosition
    confidence: float
    valid: bool
    error: Optional[str] = None


def _usable(w, h):
    return w is not None and h is not None and w > 0 and h > 0


def resolve_frame_size(ctx: RenderContext):
    """Canvas size, else video size, else stream track size, else the default."""
    for w, h in ((ctx.canvas_w, ctx.canvas_h),
                 (ctx.video_w, ctx.video_h),
                 (ctx.track_w, ctx.track_h)):
        if _usable(w, h):
            return int(w), int(h)
    if ctx.default_size and _usable(*ctx.default_size):
        return int(ctx.default_size[0]), int(ctx.default_size[1])
    raise DimensionUnavailable("display size unknown")


def _visible(point):
    return point is not None and point.vis > VISIBILITY_THRESHOLD


def _normalize_angle(deg):
    # keep overlays upright whichever way the anchor line points
    while deg > 90.0:
        deg -= 180.0
    while deg <= -90.0:
        deg += 180.0
    return deg


def _finite(*vals):
    return all(math.isfinite(v) for v in vals)


def face_box(landmarks, ctx: RenderContext) -> BoundingBox:
    box = ctx.bounding_box if ctx.bounding_box is not None else compute_bounding_box(landmarks)
    return mirror_bounding_box(box) if ctx.mirrored else box


def calculate_placement(config: OverlayConfig, landmarks: FacialLandmarks,
                        ctx: RenderContext) -> Placement:
    W, H = resolve_frame_size(ctx)
    fallback = default_position_for(config)

    def invalid(reason):
        return Placement(fallback, 0.0, False, reason)

    if landmarks is None or len(landmarks) == 0:
        return invalid("no landmarks")

    anchor = config.anchor
    primary = landmarks.get(anchor.primary)
    if not _visible(primary):
        return invalid("anchor landmark not visible")
    secondary = [landmarks.get(i) for i in anchor.secondary]
    secondary_ok = [p for p in secondary if _visible(p)]

    p_primary = to_img_px(primary, W, H, ctx.mirrored)
    pts = [p_primary] + [to_img_px(p, W, H, ctx.mirrored) for p in secondary_ok]
    center = np.mean(np.stack(pts), axis=0)
    cx = float(center[0]) + anchor.offset_x * W
    cy = float(center[1]) + anchor.offset_y * H

    box = face_box(landmarks, ctx)
    if not box.usable:
        return invalid("no usable landmarks")

    scaling = config.scaling
    cons = config.constraints
    # base scales the size once; position.scale carries only the configured default
    width = box.width * scaling.width_factor * scaling.base
    height = box.height * scaling.height_factor * scaling.base
    scale = clamp(config.default_position.scale, cons.min_scale, cons.max_scale)

    rotation = 0.0
    line = None
    if len(secondary) >= 2 and all(_visible(p) for p in secondary[:2]):
        line = (to_img_px(secondary[0], W, H, ctx.mirrored), to_img_px(secondary[1], W, H, ctx.mirrored))
    elif secondary and _visible(secondary[0]):
        line = (p_primary, to_img_px(secondary[0], W, H, ctx.mirrored))
    if line is not None:
        d = line[1] - line[0]
        rotation = _normalize_angle(math.degrees(math.atan2(float(d[1]), float(d[0]))))
        rotation = clamp(rotation, -cons.max_rotation, cons.max_rotation)

    position = OverlayPosition(
        x=cx / W,
        y=cy / H,
        width=width,
        height=height,
        rotation=rotation,
        scale=scale,
        z_index=Z_ORDER[config.type],
    )
    if not _finite(position.x, position.y, position.width, position.height,
                   position.rotation, position.scale):
        return invalid("non-finite placement")

    if secondary:
        sec_vis = sum(p.vis if p is not None else 0.0 for p in secondary) / len(secondary)
    else:
        sec_vis = primary.vis
    confidence = clamp(W_PRIMARY_CONF * primary.vis + W_SECONDARY_CONF * sec_vis, 0.0, 1.0)
    return Placement(position, confidence, True)


def compute_position(config: OverlayConfig, landmarks: FacialLandmarks,
                     ctx: RenderContext) -> OverlayPosition:
    return calculate_placement(config, landmarks, ctx).position


def ema(prev, new, a):
    return new if prev is None else (a * prev + (1.0 - a) * new)


def smooth_position(current: Optional[OverlayPosition], target: OverlayPosition,
                    factor: float) -> OverlayPosition:
    """Exponential smoothing toward ``target``; ``factor`` is the weight kept from ``current``."""
    if current is None or factor <= 0.0:
        return target
    a = clamp(factor, 0.0, 1.0)
    return replace(
        target,
        x=ema(current.x, target.x, a),
        y=ema(current.y, target.y, a),
        width=ema(current.width, target.width, a),
        height=ema(current.height, target.height, a),
        rotation=ema(current.rotation, target.rotation, a),
        scale=ema(current.scale, target.scale, a),
    )


def is_position_valid(position: OverlayPosition, margin=POSITION_MARGIN):
    if not _finite(position.x, position.y, position.width, position.height, position.scale):
        return False
    return (-margin <= position.x <= 1.0 + margin
            and -margin <= position.y <= 1.0 + margin
            and position.width > 0 and position.height > 0 and position.scale > 0)


def to_pixel_rect(position: OverlayPosition, W, H):
    """(cx, cy, w, h) in pixels for a normalized position, scale applied."""
    return (position.x * W, position.y * H,
            position.width * W * position.scale, position.height * H * position.scale)
