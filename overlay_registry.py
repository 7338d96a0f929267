"""Active overlay set, combination rules and the rendering removal cache."""
import logging
import math
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass, fields, replace
from typing import Optional, Tuple

from face_landmarks import now_ms
from overlay_models import (
    ActiveOverlay, BLEND_MODES, OverlayConfig, OverlayPosition, OverlayRendering,
    OverlayType, Z_ORDER, default_position_for,
)
from overlay_transform import (
    calculate_placement, is_position_valid, resolve_frame_size, smooth_position,
)

log = logging.getLogger(__name__)

_POSITION_FIELDS = {f.name for f in fields(OverlayPosition)}
_ALIASES = {"zIndex": "z_index", "blendMode": "blend_mode"}


@dataclass(frozen=True)
class CombinationConflict:
    overlay_ids: Tuple[str, ...]
    types: Tuple[str, ...]
    reason: str

    def to_dict(self):
        return {"ids": list(self.overlay_ids), "types": list(self.types), "reason": self.reason}


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    overlay_id: Optional[str] = None
    error: Optional[str] = None
    conflicts: Tuple[CombinationConflict, ...] = ()

    def to_dict(self):
        out = {"ok": self.ok, "id": self.overlay_id}
        if self.error:
            out["err"] = self.error
        if self.conflicts:
            out["conflicts"] = [c.to_dict() for c in self.conflicts]
        return out


def _canon(partial):
    return {_ALIASES.get(k, k): v for k, v in (partial or {}).items()}


def _is_number(v):
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


class OverlayRegistry:
    """Owns the active overlays and the per-id removal cache.

    Commands come from request threads and ``update_positions`` from the
    render loop; both go through one re-entrant lock. Every command returns
    a ``CommandResult`` instead of raising.
    """

    def __init__(self, exclusive_types=(), region_capacity=1):
        self._lock = threading.RLock()
        self._active = OrderedDict()
        self._removed = {}
        self._exclusive = {frozenset((OverlayType(a), OverlayType(b))) for a, b in exclusive_types}
        self._region_capacity = region_capacity
        self.error = None

    # ---- combination rules ----
    def _find_conflicts(self, candidate: OverlayConfig):
        prospective = [ao.config for ao in self._active.values() if ao.id != candidate.id]
        prospective.append(candidate)
        conflicts = []

        by_region = OrderedDict()
        for cfg in prospective:
            by_region.setdefault(cfg.region, []).append(cfg)
        for region, cfgs in by_region.items():
            if len(cfgs) > self._region_capacity:
                kinds = sorted({c.type.value for c in cfgs})
                label = kinds[0] if len(kinds) == 1 else "/".join(kinds)
                conflicts.append(CombinationConflict(
                    tuple(c.id for c in cfgs), tuple(c.type.value for c in cfgs),
                    f"Multiple {label} selected ({region} region)"))

        for cfg in prospective[:-1]:
            if frozenset((cfg.type, candidate.type)) in self._exclusive and cfg.type is not candidate.type:
                conflicts.append(CombinationConflict(
                    (cfg.id, candidate.id), (cfg.type.value, candidate.type.value),
                    f"{cfg.type.value} and {candidate.type.value} cannot be worn together"))
        return conflicts

    def validate(self, config: OverlayConfig):
        with self._lock:
            return self._find_conflicts(config)

    # ---- commands ----
    def add_overlay(self, config: OverlayConfig) -> CommandResult:
        with self._lock:
            conflicts = self._find_conflicts(config)
            if conflicts:
                self.error = "; ".join(c.reason + ": " + ", ".join(c.overlay_ids) for c in conflicts)
                log.warning("rejected overlay %s: %s", config.id, self.error)
                return CommandResult(False, config.id, self.error, tuple(conflicts))

            current = self._active.get(config.id)
            if current is not None:
                current.config = config
                current.position = replace(current.position, z_index=Z_ORDER[config.type])
                current.last_update = now_ms()
                self.error = None
                log.info("refreshed overlay config %s", config.id)
                return CommandResult(True, config.id)

            rendering = config.default_rendering
            cached = self._removed.pop(config.id, None)
            if cached is not None:
                rendering = replace(rendering, **cached)
                log.info("restored cached rendering for %s", config.id)
            self._active[config.id] = ActiveOverlay(
                config=config,
                position=default_position_for(config),
                rendering=rendering,
                enabled=True,
                last_update=now_ms(),
            )
            self.error = None
            log.info("added overlay %s (%s)", config.id, config.type.value)
            return CommandResult(True, config.id)

    def remove_overlay(self, overlay_id) -> CommandResult:
        with self._lock:
            ao = self._active.pop(overlay_id, None)
            if ao is None:
                return CommandResult(False, overlay_id, "overlay not active")
            self._removed[overlay_id] = asdict(ao.rendering)
            log.info("removed overlay %s", overlay_id)
            return CommandResult(True, overlay_id)

    def update_overlay_position(self, overlay_id, partial) -> CommandResult:
        changes = _canon(partial)
        unknown = set(changes) - _POSITION_FIELDS
        if unknown:
            return CommandResult(False, overlay_id, f"unknown position fields: {', '.join(sorted(unknown))}")
        for k, v in changes.items():
            if not _is_number(v):
                return CommandResult(False, overlay_id, f"{k} must be a finite number")
        if "z_index" in changes:
            changes["z_index"] = int(changes["z_index"])
        with self._lock:
            ao = self._active.get(overlay_id)
            if ao is None:
                return CommandResult(False, overlay_id, "overlay not active")
            ao.position = replace(ao.position, **changes)
            ao.last_update = now_ms()
            return CommandResult(True, overlay_id)

    def update_overlay_rendering(self, overlay_id, partial) -> CommandResult:
        changes = _canon(partial)
        unknown = set(changes) - {"opacity", "blend_mode", "visible"}
        if unknown:
            return CommandResult(False, overlay_id, f"unknown rendering fields: {', '.join(sorted(unknown))}")
        if "opacity" in changes and not _is_number(changes["opacity"]):
            return CommandResult(False, overlay_id, "opacity must be a number")
        if "blend_mode" in changes and changes["blend_mode"] not in BLEND_MODES:
            return CommandResult(False, overlay_id, f"blendMode must be one of {', '.join(BLEND_MODES)}")
        if "visible" in changes and not isinstance(changes["visible"], bool):
            return CommandResult(False, overlay_id, "visible must be true/false")
        with self._lock:
            ao = self._active.get(overlay_id)
            if ao is None:
                return CommandResult(False, overlay_id, "overlay not active")
            if "opacity" in changes:
                cons = ao.config.constraints
                changes["opacity"] = min(max(float(changes["opacity"]), cons.min_opacity), cons.max_opacity)
            ao.rendering = replace(ao.rendering, **changes)
            ao.last_update = now_ms()
            log.info("rendering %s -> %s", overlay_id, ao.rendering)
            return CommandResult(True, overlay_id)

    def toggle_overlay(self, overlay_id, enabled=None) -> CommandResult:
        with self._lock:
            ao = self._active.get(overlay_id)
            if ao is None:
                return CommandResult(False, overlay_id, "overlay not active")
            ao.enabled = (not ao.enabled) if enabled is None else bool(enabled)
            ao.last_update = now_ms()
            return CommandResult(True, overlay_id)

    def clear_overlays(self) -> CommandResult:
        with self._lock:
            n = len(self._active)
            self._active.clear()
            self.error = None
        log.info("cleared %d overlays", n)
        return CommandResult(True)

    def clear_error(self):
        with self._lock:
            self.error = None

    # ---- per frame ----
    def update_positions(self, landmarks, ctx, smoothing=0.0):
        """Re-place every enabled overlay for this frame.

        Raises ``DimensionUnavailable`` before touching any overlay when the
        display size cannot be resolved.
        """
        resolve_frame_size(ctx)
        placements = {}
        with self._lock:
            for ao in self._active.values():
                if not ao.enabled:
                    continue
                p = calculate_placement(ao.config, landmarks, ctx)
                placements[ao.id] = p
                if not p.valid:
                    ao.placed = False
                    ao.confidence = 0.0
                    continue
                position = smooth_position(ao.position if ao.placed else None, p.position, smoothing)
                if not is_position_valid(position):
                    # anchored off screen; keep the last good position
                    ao.placed = False
                    ao.confidence = 0.0
                    continue
                ao.position = position
                ao.confidence = p.confidence
                ao.placed = True
                ao.last_update = now_ms()
        return placements

    def mark_unplaced(self):
        with self._lock:
            for ao in self._active.values():
                ao.placed = False
                ao.confidence = 0.0

    # ---- queries ----
    def get_overlay(self, overlay_id) -> Optional[ActiveOverlay]:
        with self._lock:
            ao = self._active.get(overlay_id)
            return replace(ao) if ao is not None else None

    def active_ids(self):
        with self._lock:
            return list(self._active)

    def cached_rendering(self, overlay_id) -> Optional[OverlayRendering]:
        with self._lock:
            cached = self._removed.get(overlay_id)
            return OverlayRendering(**cached) if cached is not None else None

    def render_list(self, placed_only=False):
        """Enabled, visible overlays in draw order (z-index, then insertion)."""
        with self._lock:
            items = [replace(ao) for ao in self._active.values()
                     if ao.enabled and ao.rendering.visible and (ao.placed or not placed_only)]
        return sorted(items, key=lambda ao: ao.position.z_index)

    def snapshot(self):
        with self._lock:
            return {
                "active": [ao.to_dict() for ao in self._active.values()],
                "cached": sorted(self._removed),
                "error": self.error,
            }
