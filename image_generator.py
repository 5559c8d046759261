import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from config import PROGRESS_STEPS, SAMPLE_STEP
from errors import FrameProcessingError, SourceTimeout, SourceUnavailable
from frame_processor import FrameProcessor
from frame_sampler import VideoDecoder, sample_timestamps
from logger import get_logger

logger = get_logger(__name__)


class ExtractionState(Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


@dataclass(frozen=True)
class ExtractionProgress:
    completed_count: int
    total_count: int

    @property
    def fraction(self):
        if self.total_count == 0:
            return 1.0
        return self.completed_count / self.total_count

    @property
    def done(self):
        return self.completed_count == self.total_count


@dataclass
class ExtractionResult:
    state: ExtractionState
    completed_count: int
    total_count: int
    skipped_frames: int = 0
    # label -> error message
    failed_sources: dict = field(default_factory=dict)

    @property
    def is_partial(self):
        return bool(self.failed_sources) or self.completed_count < self.total_count


def batch_size_for(total_count, steps=PROGRESS_STEPS):
    return max(1, total_count // steps)


class _Run:
    """Everything owned by one start() call; jobs only ever touch their own run."""

    def __init__(self, total_count, batch_size, job_count):
        # reentrant so a progress listener may call cancel()
        self.lock = threading.RLock()
        self.cancelled = threading.Event()
        self.done = threading.Event()
        self.total_count = total_count
        self.batch_size = batch_size
        self.completed_count = 0
        self.skipped_frames = 0
        self.failed_sources = {}
        self.pending_jobs = job_count
        self.futures = []
        self.result = None


class LabelSetExtractor:
    """
    Turns labeled videos into square training images, one concurrent job per
    source, with a single progress stream for the whole run.

    States: IDLE -> RUNNING -> COMPLETED | CANCELLED. Calling start() while a
    run is active cancels it and waits for its jobs before planning the new one.
    start() and cancel() are meant to be called from one controlling thread.
    """

    def __init__(self, processor=None, step=SAMPLE_STEP, decoder_factory=VideoDecoder,
                 max_workers=None, source_timeout=None, progress_steps=PROGRESS_STEPS):
        self.processor = processor or FrameProcessor()
        self.step = step
        self.decoder_factory = decoder_factory
        self.max_workers = max_workers
        self.source_timeout = source_timeout
        self.progress_steps = progress_steps
        self.state = ExtractionState.IDLE
        self._lock = threading.Lock()
        self._run = None
        self._progress_listeners = []
        self._finish_listeners = []

    @classmethod
    def from_config(cls, config):
        return cls(
            processor=FrameProcessor(config.target_size, config.jpeg_quality),
            step=config.sample_step,
            max_workers=config.max_workers or None,
            source_timeout=config.source_timeout or None,
            progress_steps=config.progress_steps,
        )

    def add_progress_listener(self, callback):
        self._progress_listeners.append(callback)

    def add_finish_listener(self, callback):
        self._finish_listeners.append(callback)

    @property
    def progress(self):
        run = self._run
        if run is None:
            return ExtractionProgress(0, 0)
        with run.lock:
            return ExtractionProgress(run.completed_count, run.total_count)

    def start(self, sources):
        previous = self._run
        if previous is not None and not previous.done.is_set():
            logger.info('Cancelling previous extraction before starting a new one')
            self.cancel()
            previous.done.wait()

        plans = []
        failed = {}
        for source in sources:
            try:
                decoder = self.decoder_factory(source.video_path)
            except SourceUnavailable as e:
                logger.error('Source %s unavailable: %s', source.label, e)
                failed[source.label] = str(e)
                continue
            timestamps = sample_timestamps(decoder.duration, self.step)
            if not timestamps:
                decoder.close()
                logger.error('Source %s has nothing to sample', source.label)
                failed[source.label] = 'Video has no frames to sample'
                continue
            logger.info('Source %s: %.2fs -> %d frames', source.label, decoder.duration, len(timestamps))
            plans.append((source, decoder, timestamps))

        # total is fixed here, before any image exists
        total = sum(len(timestamps) for _, _, timestamps in plans)
        run = _Run(total, batch_size_for(total, self.progress_steps), len(plans))
        run.failed_sources.update(failed)

        with self._lock:
            self._run = run
            self.state = ExtractionState.RUNNING
        logger.info('Extracting %d images from %d sources', total, len(plans))

        if not plans:
            self._finish(run)
            return run

        executor = ThreadPoolExecutor(max_workers=self.max_workers or len(plans),
                                      thread_name_prefix='extract')
        for source, decoder, timestamps in plans:
            run.futures.append(executor.submit(self._job, run, source, decoder, timestamps))
        executor.shutdown(wait=False)
        return run

    def cancel(self):
        """Ask the active run to stop. Safe to call repeatedly or when nothing runs."""
        with self._lock:
            run = self._run
            if run is None or self.state is not ExtractionState.RUNNING:
                return
            self.state = ExtractionState.CANCELLED
        # no progress event is delivered once this returns
        with run.lock:
            run.cancelled.set()
        logger.info('Extraction cancelled at %d/%d', run.completed_count, run.total_count)

    def wait(self, timeout=None):
        """Block until the current run finishes; returns its ExtractionResult, or None on timeout."""
        run = self._run
        if run is None:
            raise RuntimeError('Extraction has not been started')
        if not run.done.wait(timeout):
            return None
        return run.result

    def _job(self, run, source, decoder, timestamps):
        written = 0
        skipped = 0
        started = time.monotonic()
        try:
            if run.cancelled.is_set():
                return
            os.makedirs(source.output_directory, exist_ok=True)
            for t, frame in decoder.frames(timestamps):
                if run.cancelled.is_set():
                    break
                if self.source_timeout and time.monotonic() - started > self.source_timeout:
                    raise SourceTimeout(f'{source.label} exceeded {self.source_timeout}s')
                path = os.path.join(str(source.output_directory), uuid.uuid4().hex + '.jpg')
                try:
                    self.processor(frame, path)
                except FrameProcessingError as e:
                    logger.warning('Skipping %s frame at %.2fs: %s', source.label, t, e)
                    skipped += 1
                    continue
                written += 1
                self._record(run)
        except Exception as e:
            logger.error('Source %s failed after %d images: %s', source.label, written, e)
            with run.lock:
                run.failed_sources[source.label] = str(e)
        finally:
            decoder.close()
            if not run.cancelled.is_set() and source.label not in run.failed_sources:
                # frames the decoder never delivered
                skipped = len(timestamps) - written
                if written == 0:
                    logger.error('Source %s produced no images', source.label)
                    with run.lock:
                        run.failed_sources[source.label] = 'No images were written'
            self._job_finished(run, skipped)

    def _record(self, run):
        with run.lock:
            run.completed_count += 1
            completed = run.completed_count
            if run.cancelled.is_set():
                return
            if completed % run.batch_size == 0 or completed == run.total_count:
                # delivered under the lock so listeners see a monotonic stream
                self._emit(self._progress_listeners, ExtractionProgress(completed, run.total_count))

    def _job_finished(self, run, skipped):
        with run.lock:
            run.skipped_frames += skipped
            run.pending_jobs -= 1
            last = run.pending_jobs == 0
        if last:
            self._finish(run)

    def _finish(self, run):
        with self._lock:
            state = ExtractionState.CANCELLED if run.cancelled.is_set() else ExtractionState.COMPLETED
            if self._run is run:
                self.state = state
        with run.lock:
            run.result = ExtractionResult(
                state=state,
                completed_count=run.completed_count,
                total_count=run.total_count,
                skipped_frames=run.skipped_frames,
                failed_sources=dict(run.failed_sources),
            )
            if state is ExtractionState.COMPLETED and run.total_count == 0:
                self._emit(self._progress_listeners, ExtractionProgress(0, 0))
        result = run.result
        if state is ExtractionState.COMPLETED:
            if result.is_partial:
                logger.warning('Extraction finished with %d/%d images; failed sources: %s',
                               result.completed_count, result.total_count,
                               ', '.join(result.failed_sources) or 'none')
            else:
                logger.info('Extraction completed: %d images', result.completed_count)
        run.done.set()
        self._emit(self._finish_listeners, result)

    @staticmethod
    def _emit(listeners, payload):
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception('Listener %r failed', listener)
