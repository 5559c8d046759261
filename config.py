import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

# Class names, one recorded video per name
LABELS = ['North', 'East', 'West', 'South']

# Frame extraction
SAMPLE_STEP = 0.02
TARGET_SIZE = 299
JPEG_QUALITY = 80
PROGRESS_STEPS = 100

# Training hyperparameters you can tune
BATCH_SIZE = 32
LR = 1e-3
EPOCHS = 8
INPUT_SIZE = 224
VALIDATION_SIZE = 0.1
SEED = 42

# Recording / live classification
RECORDING_SECONDS = 10.0
RECORDING_TICK = 0.1
CLASSIFY_INTERVAL = 1.0
CAMERA_INDEX = 0

DATA_ROOT = os.getenv('VIDEOCLASSIFIER_ROOT', 'workspace')
VIDEO_DIRNAME = 'Video'
TRAINING_DATA_DIRNAME = 'TrainingData'
MODEL_DIRNAME = 'MLModel'
MODEL_FILENAME = 'classifier.pt'
VIDEO_SUFFIX = '.mp4'


@dataclass(frozen=True)
class LabeledSource:
    label: str
    video_path: Path
    output_directory: Path


@dataclass
class Config:
    root: str = DATA_ROOT
    labels: list = field(default_factory=lambda: list(LABELS))
    sample_step: float = SAMPLE_STEP
    target_size: int = TARGET_SIZE
    jpeg_quality: int = JPEG_QUALITY
    progress_steps: int = PROGRESS_STEPS
    max_workers: int = 0
    source_timeout: float = 0.0
    batch_size: int = BATCH_SIZE
    lr: float = LR
    epochs: int = EPOCHS
    input_size: int = INPUT_SIZE
    validation_size: float = VALIDATION_SIZE
    pretrained: bool = True
    seed: int = SEED
    recording_seconds: float = RECORDING_SECONDS
    classify_interval: float = CLASSIFY_INTERVAL
    camera_index: int = CAMERA_INDEX

    @property
    def video_dir(self) -> Path:
        return Path(self.root) / VIDEO_DIRNAME

    @property
    def training_data_dir(self) -> Path:
        return Path(self.root) / TRAINING_DATA_DIRNAME

    @property
    def model_dir(self) -> Path:
        return Path(self.root) / MODEL_DIRNAME

    @property
    def model_path(self) -> Path:
        return self.model_dir / MODEL_FILENAME

    def video_path(self, label) -> Path:
        return self.video_dir / (label + VIDEO_SUFFIX)

    def label_dir(self, label) -> Path:
        return self.training_data_dir / label

    def sources(self):
        """Build the labeled sources, one per configured class name."""
        return [
            LabeledSource(label=label, video_path=self.video_path(label), output_directory=self.label_dir(label))
            for label in self.labels
        ]


def load_config(path=None) -> Config:
    """
    Build a Config from defaults, optionally overlaid with a YAML file.
    Unknown keys in the file raise ValueError so typos don't go unnoticed.
    """
    conf = Config()
    if path is None:
        return conf

    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f'Config file {path} must contain a mapping')

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f'Unknown config keys in {path}: {", ".join(unknown)}')

    for key, value in data.items():
        setattr(conf, key, value)
    if not conf.labels:
        raise ValueError('Config must define at least one label')
    return conf
