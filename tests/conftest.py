"""
Shared pytest fixtures.

`make_video` writes a real clip with OpenCV for the decoder and
end-to-end tests.
"""

import cv2
import numpy as np
import pytest

from config import Config


@pytest.fixture
def config(tmp_path):
    return Config(root=str(tmp_path / 'workspace'), labels=['North', 'East', 'West', 'South'])


@pytest.fixture
def make_video(tmp_path):
    """Write a clip (mp4v for .mp4, MJPG otherwise) of `frames` frames at `fps`, each a different gray level."""

    def _make(name='clip.avi', frames=20, fps=10.0, size=(64, 48)):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        fourcc = 'mp4v' if path.suffix == '.mp4' else 'MJPG'
        writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*fourcc), fps, size)
        for i in range(frames):
            frame = np.full((size[1], size[0], 3), (i * 10) % 255, dtype=np.uint8)
            writer.write(frame)
        writer.release()
        return path

    return _make
