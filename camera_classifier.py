import threading
import time

import cv2

from config import CAMERA_INDEX, CLASSIFY_INTERVAL
from errors import CameraUnavailable
from logger import get_logger

logger = get_logger(__name__)


def open_camera(index=CAMERA_INDEX):
    cap = cv2.VideoCapture(index)
    if not cap.isOpened():
        cap.release()
        raise CameraUnavailable(f'Cannot open camera {index}')
    return cap


class LiveClassifier:
    """Classifies at most one camera frame per `interval` seconds; late frames are dropped."""

    def __init__(self, classifier, capture=None, interval=CLASSIFY_INTERVAL, on_predictions=None,
                 camera_index=CAMERA_INDEX, clock=time.monotonic):
        self.classifier = classifier
        self.capture = capture
        self.interval = interval
        self.on_predictions = on_predictions
        self.camera_index = camera_index
        self.clock = clock
        self._stop = threading.Event()

    def stop(self):
        self._stop.set()

    def run(self, max_frames=None):
        """Read frames until the camera stops, stop() is called or max_frames were classified."""
        self._stop.clear()
        owns_capture = self.capture is None
        cap = open_camera(self.camera_index) if owns_capture else self.capture
        last = None
        classified = 0
        try:
            while not self._stop.is_set():
                ok, frame = cap.read()
                if not ok:
                    break
                now = self.clock()
                if last is not None and now - last < self.interval:
                    continue
                last = now

                predictions = self.classifier.classify(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
                classified += 1
                if predictions:
                    top = predictions[0]
                    logger.debug('%s (%.0f%%) in %.0f ms', top.label, top.confidence, top.elapsed_time * 1000)
                if self.on_predictions is not None:
                    self.on_predictions(predictions)
                if max_frames is not None and classified >= max_frames:
                    break
        finally:
            if owns_capture:
                cap.release()
        return classified
