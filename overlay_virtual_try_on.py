import logging
import os

from flask import Flask, Response, jsonify, request

from overlay_catalog import CATALOG, DEFAULT_CONSTRAINTS, configs_by_type
from overlay_models import OverlayType
from try_on_session import TryOnSession
from try_on_settings import (
    ASSET_DIR, CAM_INDEX, DEFAULT_OVERLAYS, H_CAP, H_MIRROR, HOST, PORT, W_CAP,
)

log = logging.getLogger(__name__)


def _result_response(result):
    if result.ok:
        return jsonify(result.to_dict())
    code = 409 if result.conflicts else 400
    return jsonify(result.to_dict()), code


def create_app(session=None, autostart=True):
    session = session or TryOnSession()
    app = Flask(__name__)
    app.config["SESSION"] = session

    def _payload():
        return request.get_json(force=True, silent=True) or {}

    def _overlay_id(data):
        oid = data.get("id") or data.get("overlayId")
        if not isinstance(oid, str) or not oid:
            return None
        return oid

    def generate_stream():
        seq = 0
        while True:
            got = session.wait_for_frame(seq, timeout=1.0)
            if got is None:
                if not session.running:
                    return
                continue
            seq, jpeg = got
            yield (b'--frame\r\nContent-Type: image/jpeg\r\n\r\n' + jpeg + b'\r\n')

    @app.route("/")
    def root():
        return jsonify(ok=True, service="overlay-virtual-try-on",
                       stream="/stream.mjpg", status="/api/status", overlays="/api/overlays")

    @app.route("/stream.mjpg")
    def stream_jpg():
        if autostart:
            session.start()
        return Response(generate_stream(), mimetype="multipart/x-mixed-replace; boundary=frame")

    @app.route("/snapshot")
    def snapshot():
        if session.last_jpeg is None:
            return "no frame yet", 503
        return Response(session.last_jpeg, headers={
            "Content-Type": "image/jpeg",
            "Content-Disposition": f'attachment; filename="snapshot_{int(session.last_ts)}.jpg"'
        })

    @app.route("/api/status")
    def api_status():
        return jsonify(ok=True, tracking=session.status())

    @app.route("/api/overlays")
    def api_overlays():
        catalog = []
        for cfg in session.catalog.values():
            entry = cfg.to_dict()
            entry["compatible"] = not session.registry.validate(cfg)
            catalog.append(entry)
        by_type = {t.value: [cfg.id for cfg in configs_by_type(t, session.catalog)] for t in OverlayType}
        return jsonify(ok=True,
                       catalog=catalog,
                       byType=by_type,
                       **session.registry.snapshot())

    @app.route("/api/overlays/add", methods=["POST"])
    def api_add():
        oid = _overlay_id(_payload())
        if oid is None:
            return jsonify(ok=False, err="id is required"), 400
        if not session.has_config(oid):
            return jsonify(ok=False, err=f"unknown overlay id: {oid}"), 404
        return _result_response(session.add_overlay(oid))

    @app.route("/api/overlays/remove", methods=["POST"])
    def api_remove():
        oid = _overlay_id(_payload())
        if oid is None:
            return jsonify(ok=False, err="id is required"), 400
        result = session.remove_overlay(oid)
        if not result.ok:
            return jsonify(result.to_dict()), 404
        return jsonify(result.to_dict())

    @app.route("/api/overlays/toggle", methods=["POST"])
    def api_toggle():
        data = _payload()
        oid = _overlay_id(data)
        if oid is None:
            return jsonify(ok=False, err="id is required"), 400
        enabled = data.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            return jsonify(ok=False, err="enabled must be true/false"), 400
        result = session.toggle_overlay(oid, enabled)
        if not result.ok:
            return jsonify(result.to_dict()), 404
        return jsonify(result.to_dict())

    @app.route("/api/overlays/rendering", methods=["POST"])
    def api_rendering():
        data = dict(_payload())
        oid = _overlay_id(data)
        if oid is None:
            return jsonify(ok=False, err="id is required"), 400
        data.pop("id", None)
        data.pop("overlayId", None)
        if session.registry.get_overlay(oid) is None:
            return jsonify(ok=False, id=oid, err="overlay not active"), 404
        return _result_response(session.update_overlay_rendering(oid, data))

    @app.route("/api/overlays/clear", methods=["POST"])
    def api_clear():
        return jsonify(session.clear_overlays().to_dict())

    @app.route("/api/reset", methods=["POST"])
    def api_reset():
        session.reset_tracking()
        return jsonify(ok=True, tracking=session.status())

    @app.route("/api/tracking/start", methods=["POST"])
    def api_start():
        started = session.start()
        return jsonify(ok=True, started=started, running=session.running)

    @app.route("/api/tracking/stop", methods=["POST"])
    def api_stop():
        stopped = session.stop()
        return jsonify(ok=True, stopped=stopped, running=session.running)

    return app


def main():
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(),
                        format="[%(levelname)s] %(name)s: %(message)s")
    session = TryOnSession()
    for oid in DEFAULT_OVERLAYS:
        result = session.add_overlay(oid)
        if not result.ok:
            log.warning("default overlay %s not added: %s", oid, result.error)
    app = create_app(session)

    print("\n" + "=" * 70)
    print("Face Overlay Virtual Try-On")
    print("=" * 70)
    print("\n[INFO] Configuration:")
    print(f"  - Camera: {CAM_INDEX}, Resolution: {W_CAP}x{H_CAP}, Mirrored: {H_MIRROR}")
    print(f"  - Overlay assets: {ASSET_DIR}")
    print(f"  - Catalog: {len(CATALOG)} overlays, opacity range "
          f"{DEFAULT_CONSTRAINTS.min_opacity}-{DEFAULT_CONSTRAINTS.max_opacity}")
    print(f"  - Default overlays: {', '.join(DEFAULT_OVERLAYS) or 'none'}")
    print(f"  - Stream: http://{HOST}:{PORT}/stream.mjpg")
    print("=" * 70 + "\n")
    try:
        app.run(host=HOST, port=PORT, threaded=True)
    finally:
        session.close()


if __name__ == "__main__":
    main()
