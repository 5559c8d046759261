import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from dataset_prep import prepare_directories
from errors import TrainingCancelled, TrainingError
from image_generator import ExtractionResult, ExtractionState, LabelSetExtractor
from logger import get_logger
from train import Trainer, TrainingResult

logger = get_logger(__name__)


class TrainingState(Enum):
    READY = 'ready'
    GENERATING_IMAGES = 'generating_images'
    TRAINING = 'training'
    FINISHED = 'finished'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


@dataclass
class TrainingReport:
    state: TrainingState
    extraction: Optional[ExtractionResult] = None
    training: Optional[TrainingResult] = None
    error: Optional[str] = None
    failed_sources: dict = field(default_factory=dict)

    @property
    def is_partial(self):
        return bool(self.failed_sources) or (self.extraction is not None and self.extraction.is_partial)


class TrainingOrchestrator:
    """Directories -> frame extraction -> training. run() blocks; cancel() works at either stage."""

    def __init__(self, config, extractor=None, trainer=None):
        self.config = config
        self.extractor = extractor or LabelSetExtractor.from_config(config)
        self.trainer = trainer or Trainer(
            batch_size=config.batch_size,
            lr=config.lr,
            epochs=config.epochs,
            input_size=config.input_size,
            validation_size=config.validation_size,
            pretrained=config.pretrained,
            seed=config.seed,
        )
        self.state = TrainingState.READY
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    def cancel(self):
        """Stop the active run. A no-op between runs, so it never leaks into the next one."""
        with self._lock:
            if self.state not in (TrainingState.GENERATING_IMAGES, TrainingState.TRAINING):
                return
            self._cancelled.set()
        self.extractor.cancel()
        self.trainer.cancel()

    def _cancelled_report(self, extraction=None):
        self.state = TrainingState.CANCELLED
        logger.info('Training flow cancelled')
        return TrainingReport(TrainingState.CANCELLED, extraction=extraction,
                              failed_sources=dict(extraction.failed_sources) if extraction else {})

    def run(self) -> TrainingReport:
        with self._lock:
            # flags are reset before the run becomes cancellable
            self._cancelled.clear()
            self.trainer.reset()
            self.state = TrainingState.GENERATING_IMAGES
        prepare_directories(self.config)
        if self._cancelled.is_set():
            return self._cancelled_report()

        self.extractor.start(self.config.sources())
        extraction = self.extractor.wait()
        failed = dict(extraction.failed_sources)
        if self._cancelled.is_set() or extraction.state is ExtractionState.CANCELLED:
            return self._cancelled_report(extraction)
        if extraction.completed_count == 0:
            self.state = TrainingState.FAILED
            return TrainingReport(TrainingState.FAILED, extraction=extraction,
                                  error='No training images were produced', failed_sources=failed)

        with self._lock:
            if self._cancelled.is_set():
                return self._cancelled_report(extraction)
            self.state = TrainingState.TRAINING
        try:
            training = self.trainer.train(self.config.training_data_dir, self.config.model_path)
        except TrainingCancelled:
            return self._cancelled_report(extraction)
        except TrainingError as e:
            logger.error('Training failed: %s', e)
            self.state = TrainingState.FAILED
            return TrainingReport(TrainingState.FAILED, extraction=extraction, error=str(e), failed_sources=failed)

        missing = [label for label in self.config.labels if label not in training.labels]
        for label in missing:
            failed.setdefault(label, 'No training images')
        if missing:
            logger.warning('Model trained without labels: %s', ', '.join(missing))

        self.state = TrainingState.FINISHED
        return TrainingReport(TrainingState.FINISHED, extraction=extraction, training=training, failed_sources=failed)
