import io
import os
import tempfile

import numpy as np
from PIL import Image

from config import JPEG_QUALITY, TARGET_SIZE
from errors import FrameProcessingError, WriteError


def to_image(frame) -> Image.Image:
    """Accept a PIL image or an HxW / HxWxC uint8 array and return an RGB PIL image."""
    if isinstance(frame, Image.Image):
        img = frame
    else:
        arr = np.asarray(frame)
        if arr.ndim not in (2, 3) or arr.size == 0:
            raise FrameProcessingError(f'Invalid frame shape {arr.shape}')
        if arr.ndim == 3 and arr.shape[2] not in (1, 3, 4):
            raise FrameProcessingError(f'Unsupported channel count {arr.shape[2]}')
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[:, :, 0]
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        try:
            img = Image.fromarray(arr)
        except (TypeError, ValueError) as e:
            raise FrameProcessingError(f'Cannot convert frame: {e}') from e
    if img.width <= 0 or img.height <= 0:
        raise FrameProcessingError(f'Empty frame {img.width}x{img.height}')
    return img.convert('RGB')


def square_box(width, height):
    """
    Centered square crop box (left, upper, right, lower). An odd margin leaves
    the extra pixel on the right and at the top, so the box leans to the
    lower left.
    """
    side = min(width, height)
    left = (width - side) // 2
    # PIL rows grow downwards
    upper = (height - side + 1) // 2
    return left, upper, left + side, upper + side


def square(img: Image.Image) -> Image.Image:
    return img.crop(square_box(img.width, img.height))


def resize(img: Image.Image, target_size) -> Image.Image:
    # independent x/y scale factors, target/side on each axis
    scale_x = target_size / img.width
    scale_y = target_size / img.height
    size = (max(1, round(img.width * scale_x)), max(1, round(img.height * scale_y)))
    return img.resize(size, Image.BILINEAR)


class FrameProcessor:
    """Center-crops frames to a square, scales them to a fixed size and writes JPEGs."""

    def __init__(self, target_size=TARGET_SIZE, quality=JPEG_QUALITY):
        if target_size <= 0:
            raise ValueError('target_size must be positive')
        self.target_size = target_size
        self.quality = quality

    def process(self, frame) -> Image.Image:
        img = to_image(frame)
        return resize(square(img), self.target_size)

    def encode(self, img: Image.Image) -> bytes:
        buffer = io.BytesIO()
        try:
            img.save(buffer, format='JPEG', quality=self.quality)
        except (OSError, ValueError) as e:
            raise FrameProcessingError(f'JPEG encoding failed: {e}') from e
        return buffer.getvalue()

    def save(self, data: bytes, path):
        """Write through a temp file in the same directory so a failed write leaves nothing behind."""
        path = str(path)
        directory = os.path.dirname(os.path.abspath(path))
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise WriteError(f'Failed to write {path}: {e}') from e

    def __call__(self, frame, path):
        """Crop, resize, encode and write one frame. Returns the written path."""
        data = self.encode(self.process(frame))
        self.save(data, path)
        return path
