# record one short clip per class from the webcam; frames are extracted later
import os
import threading
import time

import cv2

from config import RECORDING_TICK
from errors import CameraUnavailable
from logger import get_logger

logger = get_logger(__name__)


class VideoRecorder:
    def __init__(self, config, capture_factory=cv2.VideoCapture, writer_factory=cv2.VideoWriter,
                 clock=time.monotonic):
        self.config = config
        self.capture_factory = capture_factory
        self.writer_factory = writer_factory
        self.clock = clock
        self._stop = threading.Event()

    def stop(self):
        self._stop.set()

    def record(self, label, seconds=None, on_progress=None):
        """
        Record `seconds` of video for `label` to its video path.
        on_progress receives the elapsed fraction in 0.1 s ticks.
        Returns the file path, or None if stop() interrupted the recording.
        """
        if label not in self.config.labels:
            raise ValueError(f'Unknown label {label!r}')
        seconds = self.config.recording_seconds if seconds is None else seconds
        self._stop.clear()

        cap = self.capture_factory(self.config.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailable(f'Cannot open camera {self.config.camera_index}')

        path = self.config.video_path(label)
        writer = None
        try:
            ok, frame = cap.read()
            if not ok:
                raise CameraUnavailable('Camera returned no frames')
            h, w = frame.shape[:2]
            fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
            os.makedirs(path.parent, exist_ok=True)
            writer = self.writer_factory(str(path), cv2.VideoWriter_fourcc(*'mp4v'), fps, (w, h))

            total_ticks = max(1, round(seconds / RECORDING_TICK))
            ticks = 0
            started = self.clock()
            while not self._stop.is_set():
                writer.write(frame)
                elapsed = self.clock() - started
                tick = min(total_ticks, int(elapsed / RECORDING_TICK))
                if tick > ticks:
                    ticks = tick
                    if on_progress is not None:
                        on_progress(ticks / total_ticks)
                if elapsed >= seconds:
                    break
                ok, frame = cap.read()
                if not ok:
                    logger.warning('Camera stopped after %.1fs while recording %s', elapsed, label)
                    break
        finally:
            if writer is not None:
                writer.release()
            cap.release()

        if self._stop.is_set():
            # an interrupted clip is not a usable recording
            if path.exists():
                path.unlink()
            logger.info('Recording of %s stopped by user', label)
            return None
        logger.info('Recorded %s to %s', label, path)
        return path

    def recording_status(self):
        return [(label, self.config.video_path(label).exists()) for label in self.config.labels]

    def all_captured(self):
        return all(captured for _, captured in self.recording_status())

    def clear_recordings(self):
        removed = 0
        for label in self.config.labels:
            path = self.config.video_path(label)
            if path.exists():
                path.unlink()
                removed += 1
        return removed
