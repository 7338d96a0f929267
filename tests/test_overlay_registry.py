"""Tests for the overlay registry: combination rules and the removal cache."""
from dataclasses import replace

import pytest

from overlay_catalog import CATALOG
from overlay_models import OverlayPosition, OverlayRendering, OverlayType, Z_ORDER
from overlay_registry import OverlayRegistry
from overlay_transform import DimensionUnavailable, Placement, RenderContext

CLASSIC = CATALOG["glasses-classic"]
ROUND = CATALOG["glasses-round"]
AVIATOR = CATALOG["glasses-aviator"]
FEDORA = CATALOG["hat-fedora"]
BEANIE = CATALOG["hat-beanie"]
MASK = CATALOG["mask-surgical"]

CTX = RenderContext(canvas_w=640, canvas_h=480)


@pytest.fixture
def registry():
    return OverlayRegistry()


def _state(reg):
    snap = reg.snapshot()
    return [(a["id"], a["rendering"], a["enabled"]) for a in snap["active"]]


class TestAdd:

    def test_add_initializes_from_defaults(self, registry):
        result = registry.add_overlay(CLASSIC)
        assert result.ok
        ao = registry.get_overlay(CLASSIC.id)
        assert ao.rendering == CLASSIC.default_rendering
        assert ao.rendering.opacity == 0.9
        assert ao.enabled
        assert ao.position.z_index == Z_ORDER[OverlayType.GLASSES]

    def test_glasses_and_hat_together(self, registry):
        assert registry.add_overlay(CLASSIC).ok
        assert registry.add_overlay(FEDORA).ok
        assert registry.add_overlay(MASK).ok
        assert registry.active_ids() == [CLASSIC.id, FEDORA.id, MASK.id]

    def test_second_glasses_rejected(self, registry):
        registry.add_overlay(CLASSIC)
        before = _state(registry)
        result = registry.add_overlay(ROUND)
        assert not result.ok
        assert result.conflicts
        assert set(result.conflicts[0].overlay_ids) == {CLASSIC.id, ROUND.id}
        assert "Multiple glasses selected" in result.error
        assert registry.error == result.error
        assert _state(registry) == before
        assert registry.active_ids() == [CLASSIC.id]

    def test_exclusive_types_rejected(self):
        reg = OverlayRegistry(exclusive_types=[("hat", "mask")])
        assert reg.add_overlay(FEDORA).ok
        result = reg.add_overlay(MASK)
        assert not result.ok
        assert "cannot be worn together" in result.error
        assert reg.active_ids() == [FEDORA.id]

    def test_validate_reports_without_adding(self, registry):
        registry.add_overlay(CLASSIC)
        conflicts = registry.validate(ROUND)
        assert len(conflicts) == 1
        assert conflicts[0].overlay_ids == (CLASSIC.id, ROUND.id)
        assert registry.validate(FEDORA) == []
        assert registry.validate(CLASSIC) == []
        assert registry.active_ids() == [CLASSIC.id]
        assert registry.error is None

    def test_successful_add_clears_error(self, registry):
        registry.add_overlay(CLASSIC)
        registry.add_overlay(ROUND)
        assert registry.error
        registry.add_overlay(FEDORA)
        assert registry.error is None

    def test_readd_active_keeps_live_rendering(self, registry):
        registry.add_overlay(CLASSIC)
        registry.update_overlay_rendering(CLASSIC.id, {"opacity": 0.5})
        refreshed = replace(CLASSIC, name="Classic v2",
                            default_rendering=OverlayRendering(opacity=1.0))
        assert registry.add_overlay(refreshed).ok
        ao = registry.get_overlay(CLASSIC.id)
        assert ao.config.name == "Classic v2"
        assert ao.rendering.opacity == 0.5
        assert registry.active_ids() == [CLASSIC.id]


class TestRemovalCache:

    def test_remove_then_readd_restores_rendering(self, registry):
        registry.add_overlay(FEDORA)
        registry.update_overlay_rendering(FEDORA.id, {"opacity": 0.45, "blendMode": "multiply"})
        at_removal = registry.get_overlay(FEDORA.id).rendering
        assert registry.remove_overlay(FEDORA.id).ok
        assert registry.cached_rendering(FEDORA.id) == at_removal
        assert registry.add_overlay(FEDORA).ok
        assert registry.get_overlay(FEDORA.id).rendering == at_removal

    def test_cache_beats_new_config_defaults(self, registry):
        registry.add_overlay(CLASSIC)
        registry.remove_overlay(CLASSIC.id)
        other = replace(CLASSIC, default_rendering=OverlayRendering(opacity=0.4))
        registry.add_overlay(other)
        assert registry.get_overlay("glasses-classic").rendering.opacity == 0.9

    def test_cache_consumed_on_readd(self, registry):
        registry.add_overlay(CLASSIC)
        registry.remove_overlay(CLASSIC.id)
        registry.add_overlay(CLASSIC)
        assert registry.cached_rendering(CLASSIC.id) is None

    def test_cache_and_active_disjoint(self, registry):
        for step in (lambda: registry.add_overlay(CLASSIC),
                     lambda: registry.remove_overlay(CLASSIC.id),
                     lambda: registry.add_overlay(CLASSIC),
                     lambda: registry.add_overlay(FEDORA),
                     lambda: registry.remove_overlay(FEDORA.id),
                     lambda: registry.clear_overlays()):
            step()
            snap = registry.snapshot()
            active = {a["id"] for a in snap["active"]}
            assert not active & set(snap["cached"])

    def test_clear_does_not_cache(self, registry):
        registry.add_overlay(CLASSIC)
        registry.update_overlay_rendering(CLASSIC.id, {"opacity": 0.5})
        registry.clear_overlays()
        assert registry.active_ids() == []
        assert registry.cached_rendering(CLASSIC.id) is None
        registry.add_overlay(CLASSIC)
        assert registry.get_overlay(CLASSIC.id).rendering.opacity == 0.9

    def test_remove_unknown(self, registry):
        result = registry.remove_overlay("nope")
        assert not result.ok
        assert registry.cached_rendering("nope") is None

    def test_rejected_add_keeps_cache(self, registry):
        registry.add_overlay(ROUND)
        registry.remove_overlay(ROUND.id)
        registry.add_overlay(CLASSIC)
        assert not registry.add_overlay(ROUND).ok
        assert registry.cached_rendering(ROUND.id) is not None


class TestUpdates:

    def test_rendering_opacity_clamped(self, registry):
        registry.add_overlay(CLASSIC)
        registry.update_overlay_rendering(CLASSIC.id, {"opacity": 0.05})
        assert registry.get_overlay(CLASSIC.id).rendering.opacity == CLASSIC.constraints.min_opacity

    def test_rendering_rejects_bad_values(self, registry):
        registry.add_overlay(CLASSIC)
        assert not registry.update_overlay_rendering(CLASSIC.id, {"blendMode": "dodge"}).ok
        assert not registry.update_overlay_rendering(CLASSIC.id, {"opacity": "high"}).ok
        assert not registry.update_overlay_rendering(CLASSIC.id, {"colour": "red"}).ok
        assert not registry.update_overlay_rendering(CLASSIC.id, {"visible": "yes"}).ok
        assert registry.get_overlay(CLASSIC.id).rendering == CLASSIC.default_rendering

    def test_update_unknown_id_is_noop(self, registry):
        result = registry.update_overlay_rendering("ghost", {"opacity": 0.5})
        assert not result.ok
        assert registry.active_ids() == []

    def test_position_update(self, registry):
        registry.add_overlay(CLASSIC)
        assert registry.update_overlay_position(CLASSIC.id, {"x": 0.2, "zIndex": 7}).ok
        pos = registry.get_overlay(CLASSIC.id).position
        assert pos.x == 0.2
        assert pos.z_index == 7
        assert not registry.update_overlay_position(CLASSIC.id, {"x": float("nan")}).ok
        assert not registry.update_overlay_position(CLASSIC.id, {"depth": 1}).ok

    def test_toggle(self, registry):
        registry.add_overlay(CLASSIC)
        registry.toggle_overlay(CLASSIC.id)
        assert not registry.get_overlay(CLASSIC.id).enabled
        registry.toggle_overlay(CLASSIC.id)
        assert registry.get_overlay(CLASSIC.id).enabled
        registry.toggle_overlay(CLASSIC.id, enabled=False)
        assert not registry.get_overlay(CLASSIC.id).enabled
        assert CLASSIC.id in registry.active_ids()
        assert not registry.toggle_overlay("ghost").ok


class TestPerFrame:

    def test_render_list_z_sorted_and_filtered(self, registry):
        registry.add_overlay(FEDORA)
        registry.add_overlay(CLASSIC)
        registry.add_overlay(MASK)
        registry.toggle_overlay(MASK.id, enabled=False)
        assert [ao.id for ao in registry.render_list()] == [CLASSIC.id, FEDORA.id]
        registry.update_overlay_rendering(CLASSIC.id, {"visible": False})
        assert [ao.id for ao in registry.render_list()] == [FEDORA.id]

    def test_update_positions_places_enabled(self, registry, landmarks):
        registry.add_overlay(CLASSIC)
        registry.add_overlay(FEDORA)
        registry.toggle_overlay(FEDORA.id, enabled=False)
        placements = registry.update_positions(landmarks, CTX)
        assert set(placements) == {CLASSIC.id}
        ao = registry.get_overlay(CLASSIC.id)
        assert ao.placed
        assert ao.position.x == pytest.approx(0.5)
        assert [a.id for a in registry.render_list(placed_only=True)] == [CLASSIC.id]

    def test_update_positions_does_not_touch_rendering(self, registry, landmarks):
        registry.add_overlay(CLASSIC)
        registry.update_overlay_rendering(CLASSIC.id, {"opacity": 0.6})
        registry.update_positions(landmarks, CTX)
        assert registry.get_overlay(CLASSIC.id).rendering.opacity == 0.6

    def test_invalid_placement_keeps_position(self, registry, make_landmarks):
        from face_landmarks import LandmarkPoint
        registry.add_overlay(CLASSIC)
        registry.update_positions(make_landmarks(), CTX)
        before = registry.get_overlay(CLASSIC.id).position
        lm = make_landmarks(overrides={159: LandmarkPoint(0.1, 0.1, 0.0, 0.0)})
        placements = registry.update_positions(lm, CTX)
        assert not placements[CLASSIC.id].valid
        ao = registry.get_overlay(CLASSIC.id)
        assert ao.position == before
        assert not ao.placed

    def test_dimension_unavailable_propagates_before_changes(self, registry, landmarks):
        registry.add_overlay(CLASSIC)
        with pytest.raises(DimensionUnavailable):
            registry.update_positions(landmarks, RenderContext(default_size=None))
        assert not registry.get_overlay(CLASSIC.id).placed

    def test_off_screen_position_not_placed(self, registry, landmarks, monkeypatch):
        registry.add_overlay(CLASSIC)
        registry.update_positions(landmarks, CTX)
        before = registry.get_overlay(CLASSIC.id).position
        off_screen = Placement(OverlayPosition(1.5, 0.5, 0.3, 0.1), 0.9, True)
        monkeypatch.setattr("overlay_registry.calculate_placement", lambda cfg, lm, ctx: off_screen)
        registry.update_positions(landmarks, CTX)
        ao = registry.get_overlay(CLASSIC.id)
        assert not ao.placed
        assert ao.confidence == 0.0
        assert ao.position == before
        assert registry.render_list(placed_only=True) == []
