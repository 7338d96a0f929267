import os

HERE = os.path.dirname(os.path.abspath(__file__))


def env_bool(name, default="0"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on", "y")


def env_list(name, default=""):
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# Camera
CAM_INDEX = int(os.environ.get("CAM_INDEX", "0"))
W_CAP = int(os.environ.get("CAP_W", "640"))
H_CAP = int(os.environ.get("CAP_H", "480"))
CAP_FPS = float(os.environ.get("CAP_FPS", "30"))
H_MIRROR = env_bool("H_MIRROR", "1")

# Used when neither the canvas, the video nor the stream track report a size.
DEFAULT_FRAME_W = int(os.environ.get("DEFAULT_FRAME_W", "640"))
DEFAULT_FRAME_H = int(os.environ.get("DEFAULT_FRAME_H", "480"))

# Face mesh
MAX_NUM_FACES = int(os.environ.get("MAX_NUM_FACES", "2"))
MIN_DETECTION_CONFIDENCE = float(os.environ.get("MIN_DETECTION_CONFIDENCE", "0.5"))
MIN_TRACKING_CONFIDENCE = float(os.environ.get("MIN_TRACKING_CONFIDENCE", "0.5"))
REFINE_LANDMARKS = env_bool("REFINE_LANDMARKS", "0")
VISIBILITY_THRESHOLD = float(os.environ.get("VISIBILITY_THRESHOLD", "0.5"))

# Overlays
ASSET_DIR = os.environ.get("OVERLAY_ASSET_DIR", os.path.join(HERE, "overlays"))
DEFAULT_OVERLAYS = env_list("DEFAULT_OVERLAYS", "")
SMOOTH_A = float(os.environ.get("SMOOTH_A", "0.30"))

# Rendering / streaming
JPEG_QUALITY = int(os.environ.get("JPEG_QUALITY", "80"))
SHOW_HUD = env_bool("SHOW_HUD", "1")
SHOW_LANDMARKS = env_bool("SHOW_LANDMARKS", "0")
PERF_REPORT_EVERY = int(os.environ.get("PERF_REPORT_EVERY", "60"))
TARGET_FPS = float(os.environ.get("TARGET_FPS", "30"))
MIN_FPS = float(os.environ.get("MIN_FPS", "15"))
MAX_LATENCY_MS = float(os.environ.get("MAX_LATENCY_MS", "100"))

# HTTP
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5000"))
