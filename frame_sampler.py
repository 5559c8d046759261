import math
import os

import cv2

from config import SAMPLE_STEP
from errors import SourceUnavailable
from logger import get_logger

logger = get_logger(__name__)


def sample_count(duration, step=SAMPLE_STEP):
    """Number of timestamps 0, step, 2*step, ... that are strictly below duration."""
    if step <= 0:
        raise ValueError(f'step must be positive, got {step}')
    if duration <= 0:
        return 0
    q = duration / step
    nearest = round(q)
    # exact multiples must not produce a timestamp equal to duration
    count = nearest if abs(q - nearest) < 1e-9 else math.ceil(q)
    return max(count, 1)


def sample_timestamps(duration, step=SAMPLE_STEP):
    """
    Deterministic sample times for a video of `duration` seconds.
    Each value is i * step so the list does not drift with float accumulation.
    """
    return [i * step for i in range(sample_count(duration, step))]


class VideoDecoder:
    """
    Thin OpenCV wrapper: reports the duration of a video and yields RGB
    frames for sorted timestamps while decoding the file once, front to back.
    """

    def __init__(self, video_path):
        self.video_path = str(video_path)
        if not os.path.exists(self.video_path):
            raise SourceUnavailable(f'Video not found: {self.video_path}')
        self._cap = cv2.VideoCapture(self.video_path)
        if not self._cap.isOpened():
            self._cap.release()
            raise SourceUnavailable(f'Cannot open video: {self.video_path}')
        self.fps = self._cap.get(cv2.CAP_PROP_FPS) or 0.0
        self.frame_count = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        if self.fps <= 0 or self.frame_count <= 0:
            self._cap.release()
            raise SourceUnavailable(f'Video has no readable frames: {self.video_path}')

    @property
    def duration(self):
        return self.frame_count / self.fps

    def frames(self, timestamps):
        """Yield (timestamp, frame) pairs; timestamps must be non-decreasing."""
        position = -1
        image = None
        for t in timestamps:
            target = int(t * self.fps)
            while position < target:
                ok, image = self._cap.read()
                if not ok:
                    logger.debug('Stream of %s ended before %.2fs', self.video_path, t)
                    return
                position += 1
            yield t, cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    def close(self):
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
