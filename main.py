# main.py
import argparse
import sys

from tqdm import tqdm

from camera_classifier import LiveClassifier
from capture_dataset import VideoRecorder
from config import load_config
from dataset_prep import clear_training_data, count_images, prepare_directories
from errors import CameraUnavailable, ClassifierNotReady
from image_generator import ExtractionState, LabelSetExtractor
from inference import ImageClassifier
from logger import get_logger, setup_logging
from orchestrator import TrainingOrchestrator, TrainingState

logger = get_logger(__name__)


class ProgressBar:
    """Feeds ExtractionProgress events into a tqdm bar."""

    def __init__(self, desc):
        self.desc = desc
        self.bar = None

    def __call__(self, progress):
        if self.bar is None:
            self.bar = tqdm(total=progress.total_count, desc=self.desc, unit='img')
        self.bar.n = progress.completed_count
        self.bar.refresh()
        if progress.done:
            self.close()

    def close(self):
        if self.bar is not None:
            self.bar.close()
            self.bar = None


def print_failed_sources(failed_sources):
    for label, message in failed_sources.items():
        print(f'  {label}: {message}')


def cmd_record(conf, args):
    recorder = VideoRecorder(conf)
    with tqdm(total=100, desc=f'Recording {args.label}', unit='%') as bar:
        path = recorder.record(args.label, seconds=args.seconds,
                               on_progress=lambda fraction: bar.update(round(fraction * 100) - bar.n))
    if path is None:
        print('Recording stopped.')
        return 1
    print('Saved', path)
    return 0


def cmd_status(conf, args):
    recorder = VideoRecorder(conf)
    images = count_images(conf)
    for label, captured in recorder.recording_status():
        print(f'{label:>12}  video: {"yes" if captured else "no ":3}  images: {images[label]}')
    print('Model:', conf.model_path if conf.model_path.exists() else 'not trained')
    return 0


def cmd_clear_videos(conf, args):
    print(f'Removed {VideoRecorder(conf).clear_recordings()} recordings')
    return 0


def cmd_clear_training_data(conf, args):
    clear_training_data(conf)
    print('Training data cleared')
    return 0


def cmd_extract(conf, args):
    prepare_directories(conf)
    extractor = LabelSetExtractor.from_config(conf)
    bar = ProgressBar('Generating images')
    extractor.add_progress_listener(bar)
    extractor.start(conf.sources())
    try:
        result = extractor.wait()
    except KeyboardInterrupt:
        extractor.cancel()
        result = extractor.wait()
    finally:
        bar.close()

    if result.state is ExtractionState.CANCELLED:
        print(f'Cancelled after {result.completed_count}/{result.total_count} images')
        return 1
    print(f'Generated {result.completed_count}/{result.total_count} images '
          f'({result.skipped_frames} frames skipped)')
    if result.failed_sources:
        print('Failed sources:')
        print_failed_sources(result.failed_sources)
    return 1 if result.is_partial else 0


def cmd_train(conf, args):
    orchestrator = TrainingOrchestrator(conf)
    bar = ProgressBar('Generating images')
    orchestrator.extractor.add_progress_listener(bar)
    try:
        report = orchestrator.run()
    except KeyboardInterrupt:
        orchestrator.cancel()
        if orchestrator.extractor.state is not ExtractionState.IDLE:
            orchestrator.extractor.wait()
        print('Cancelled')
        return 1
    finally:
        bar.close()

    if report.state is not TrainingState.FINISHED:
        print(f'Training {report.state.value}: {report.error or ""}')
        print_failed_sources(report.failed_sources)
        return 1

    training = report.training
    print('Completed!' if not report.is_partial else 'Completed with missing images:')
    print_failed_sources(report.failed_sources)
    print(f'Elapsed Time: {training.elapsed_time * 1000:.0f} ms')
    print(f'Model Size: {training.model_size // 1024} KB')
    print(f'Training Accuracy: {training.training_accuracy:.0f}%')
    print(f'Validation Accuracy: {training.validation_accuracy:.0f}%')
    return 0


def cmd_classify(conf, args):
    classifier = ImageClassifier()
    if not conf.model_path.exists():
        print('No trained model found, run "train" first.')
        return 1
    compiled = classifier.compile(conf.model_path)
    if compiled.compilation_skipped:
        print('Compilation skipped (cached model)')
    else:
        print(f'Compiled in {compiled.compilation_time * 1000:.0f} ms')

    def show(predictions):
        print('  '.join(f'{p.label}: {p.confidence:.0f}%' for p in predictions))

    live = LiveClassifier(classifier, interval=conf.classify_interval, on_predictions=show,
                          camera_index=conf.camera_index)
    try:
        live.run(max_frames=args.max_frames)
    except KeyboardInterrupt:
        live.stop()
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description='Record labeled videos, train an image classifier and run it live.')
    parser.add_argument('--config', help='YAML file overriding config defaults')
    parser.add_argument('--log-file', help='Also write logs to this file')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('record', help='Record a clip for one label')
    p.add_argument('label')
    p.add_argument('--seconds', type=float, default=None)
    p.set_defaults(func=cmd_record)

    sub.add_parser('status', help='Show recordings, images and model').set_defaults(func=cmd_status)
    sub.add_parser('clear-videos', help='Delete all recordings').set_defaults(func=cmd_clear_videos)
    sub.add_parser('clear-training-data', help='Delete extracted images').set_defaults(func=cmd_clear_training_data)
    sub.add_parser('extract', help='Generate training images from the recordings').set_defaults(func=cmd_extract)
    sub.add_parser('train', help='Generate images and train the classifier').set_defaults(func=cmd_train)

    p = sub.add_parser('classify', help='Classify camera frames with the trained model')
    p.add_argument('--max-frames', type=int, default=None)
    p.set_defaults(func=cmd_classify)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(log_file=args.log_file)
    conf = load_config(args.config)
    try:
        return args.func(conf, args)
    except (CameraUnavailable, ClassifierNotReady, ValueError) as e:
        logger.error('%s', e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
