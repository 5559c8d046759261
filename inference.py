# inference.py
import json
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import torch
from PIL import Image

from config import INPUT_SIZE
from errors import ClassifierNotReady
from frame_processor import FrameProcessor
from logger import get_logger
from model import load_model

logger = get_logger(__name__)

COMPILED_SUFFIX = '.ts'
LABELS_FILE = 'labels.json'


@dataclass
class CompilationResult:
    compilation_time: float
    compilation_skipped: bool
    compiled_model_path: str


@dataclass
class Prediction:
    label: str
    confidence: float
    elapsed_time: float


def pil_preprocess(pil_image, size=(INPUT_SIZE, INPUT_SIZE)):
    """
    Minimal preprocessing using PIL + numpy:
    - convert to RGB
    - resize to size
    - convert to float32 and normalize using ImageNet mean/std
    - returns a numpy array (C,H,W)
    """
    img = pil_image.convert('RGB').resize(size, Image.BILINEAR)
    arr = np.array(img).astype('float32') / 255.0  # H,W,C, range 0-1
    mean = np.array([0.485, 0.456, 0.406], dtype='float32')
    std = np.array([0.229, 0.224, 0.225], dtype='float32')
    arr = (arr - mean) / std
    return arr.transpose(2, 0, 1)


def compiled_path_for(model_path):
    return Path(model_path).with_suffix(COMPILED_SUFFIX)


class ImageClassifier:
    """
    compile() turns a saved checkpoint into a TorchScript module, cached next
    to the checkpoint; classify() crops a frame the same way training images
    were cropped and returns every label ranked by confidence (percent).
    """

    def __init__(self, device=None, processor=None):
        self.device = device or ('cuda' if torch.cuda.is_available() else 'cpu')
        self.processor = processor or FrameProcessor()
        self.model = None
        self.labels = []
        self.input_size = INPUT_SIZE

    @property
    def ready(self):
        return self.model is not None

    def compile(self, model_path) -> CompilationResult:
        compiled_path = compiled_path_for(model_path)
        extra_files = {LABELS_FILE: ''}

        if compiled_path.exists():
            self.model = torch.jit.load(str(compiled_path), map_location=self.device, _extra_files=extra_files)
            meta = json.loads(extra_files[LABELS_FILE])
            result = CompilationResult(0.0, True, str(compiled_path))
        else:
            started = time.monotonic()
            model = load_model(model_path, device=self.device)
            example = torch.zeros(1, 3, model.input_size, model.input_size, device=self.device)
            with torch.no_grad():
                traced = torch.jit.trace(model, example)
            meta = {'labels': model.labels, 'input_size': model.input_size}
            torch.jit.save(traced, str(compiled_path), _extra_files={LABELS_FILE: json.dumps(meta)})
            self.model = traced
            result = CompilationResult(time.monotonic() - started, False, str(compiled_path))

        self.model.eval()
        self.labels = meta['labels']
        self.input_size = meta['input_size']
        logger.info('Classifier ready (%s, %.0f ms)', 'cached' if result.compilation_skipped else 'compiled',
                    result.compilation_time * 1000)
        return result

    def classify(self, frame):
        """
        Input: RGB frame (numpy array or PIL.Image)
        Output: list of Prediction, highest confidence first
        """
        if self.model is None:
            raise ClassifierNotReady('Please compile the model.')

        requested_at = time.monotonic()
        img = self.processor.process(frame)
        arr = pil_preprocess(img, size=(self.input_size, self.input_size))
        x = torch.from_numpy(arr).unsqueeze(0).to(self.device)  # shape 1,C,H,W

        with torch.no_grad():
            logits = self.model(x)
            probs = torch.nn.functional.softmax(logits, dim=1).cpu().numpy()[0]

        elapsed = time.monotonic() - requested_at
        order = np.argsort(-probs)
        return [Prediction(self.labels[i], float(probs[i]) * 100.0, elapsed) for i in order]
