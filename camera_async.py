# ===== camera_async.py =====
# Background camera reader: the render loop always gets the latest frame
# without waiting on camera IO.

import logging
import threading
import time

import cv2

log = logging.getLogger(__name__)


class AsyncVideoCapture:
    """
    Keeps reading frames on a daemon thread and hands out the newest one.

    read() returns immediately; a frame is copied so callers may draw on it.
    """

    def __init__(self, src=0, width=None, height=None, fps=None, capture=None):
        """
        Args:
            src: camera index or stream url
            width: requested capture width
            height: requested capture height
            fps: requested capture fps
            capture: an already opened cv2.VideoCapture-like object
        """
        self.cap = capture if capture is not None else cv2.VideoCapture(src)
        self.src = src

        if width is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height is not None:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        if fps is not None:
            self.cap.set(cv2.CAP_PROP_FPS, fps)

        self.ret, self.frame = self.cap.read()
        if not self.ret:
            log.warning("camera %s returned no first frame", src)

        self.lock = threading.Lock()
        self._stop = threading.Event()

        self.read_count = 0
        self.last_read_time = time.time()

        self.thread = threading.Thread(target=self._reader, name="camera-reader", daemon=True)
        self.thread.start()

    @property
    def running(self):
        return not self._stop.is_set()

    def _reader(self):
        while not self._stop.is_set():
            ret, frame = self.cap.read()
            if ret:
                with self.lock:
                    self.ret = ret
                    self.frame = frame
                    self.read_count += 1
            else:
                self._stop.wait(0.01)

    def read(self):
        with self.lock:
            if not self.ret or self.frame is None:
                return False, None
            return True, self.frame.copy()

    def frame_size(self):
        """(width, height) of the last frame, else the capture properties, else (0, 0)."""
        with self.lock:
            if self.frame is not None:
                h, w = self.frame.shape[:2]
                return int(w), int(h)
        w = self.cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0
        h = self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0
        return int(w), int(h)

    def get(self, prop_id):
        return self.cap.get(prop_id)

    def set(self, prop_id, value):
        return self.cap.set(prop_id, value)

    def release(self):
        if self._stop.is_set() and not self.thread.is_alive():
            return
        self._stop.set()
        if self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=1.0)
        self.cap.release()
        log.info("camera %s released", self.src)

    def get_read_fps(self):
        """Frames read by the background thread per second since the last call."""
        now = time.time()
        dt = now - self.last_read_time
        if dt > 0:
            with self.lock:
                fps = self.read_count / dt
                self.read_count = 0
            self.last_read_time = now
            return fps
        return 0.0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()

    def __del__(self):
        stop = getattr(self, "_stop", None)
        if stop is not None and not stop.is_set():
            self.release()
