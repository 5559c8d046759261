from unittest.mock import MagicMock

from errors import TrainingCancelled, TrainingError
from image_generator import LabelSetExtractor
from orchestrator import TrainingOrchestrator, TrainingState
from tests.doubles import DecoderFactory, SyntheticDecoder, null_processor
from train import TrainingResult


def fake_training_result(config):
    return TrainingResult(
        elapsed_time=1.5,
        model_size=2048,
        training_accuracy=100.0,
        validation_accuracy=95.0,
        model_path=str(config.model_path),
        labels=list(config.labels),
    )


def make_orchestrator(config, durations, trainer=None):
    decoders = {config.video_path(label): SyntheticDecoder(d) for label, d in durations.items()}
    extractor = LabelSetExtractor(processor=null_processor, decoder_factory=DecoderFactory(decoders))
    if trainer is None:
        trainer = MagicMock()
        trainer.train.return_value = fake_training_result(config)
    return TrainingOrchestrator(config, extractor=extractor, trainer=trainer), trainer


class TestTrainingOrchestrator:

    def test_full_run(self, config):
        orchestrator, trainer = make_orchestrator(config, {label: 0.5 for label in config.labels})

        report = orchestrator.run()

        assert report.state is TrainingState.FINISHED
        assert orchestrator.state is TrainingState.FINISHED
        assert report.extraction.completed_count == 100
        assert not report.is_partial
        assert report.training.validation_accuracy == 95.0
        trainer.train.assert_called_once_with(config.training_data_dir, config.model_path)

    def test_directories_are_recreated(self, config):
        stale = config.label_dir('North') / 'old.jpg'
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b'old')
        config.model_dir.mkdir(parents=True)
        (config.model_dir / 'classifier.ts').write_bytes(b'old')

        orchestrator, _ = make_orchestrator(config, {label: 0.1 for label in config.labels})
        orchestrator.run()

        assert not stale.exists()
        assert list(config.model_dir.iterdir()) == []
        assert all(config.label_dir(label).is_dir() for label in config.labels)

    def test_partial_extraction_still_trains_and_reports_failures(self, config):
        orchestrator, trainer = make_orchestrator(config, {'North': 0.5, 'East': 0.5, 'West': 0.5})

        report = orchestrator.run()

        assert report.state is TrainingState.FINISHED
        assert report.is_partial
        assert list(report.failed_sources) == ['South']
        trainer.train.assert_called_once()

    def test_no_images_fails_without_training(self, config):
        orchestrator, trainer = make_orchestrator(config, {})

        report = orchestrator.run()

        assert report.state is TrainingState.FAILED
        assert set(report.failed_sources) == set(config.labels)
        trainer.train.assert_not_called()

    def test_training_error(self, config):
        trainer = MagicMock()
        trainer.train.side_effect = TrainingError('Need images for at least 2 labels')
        orchestrator, _ = make_orchestrator(config, {'North': 0.2}, trainer=trainer)

        report = orchestrator.run()

        assert report.state is TrainingState.FAILED
        assert 'at least 2 labels' in report.error

    def test_cancel_during_training(self, config):
        trainer = MagicMock()
        trainer.train.side_effect = TrainingCancelled()
        orchestrator, _ = make_orchestrator(config, {label: 0.1 for label in config.labels}, trainer=trainer)

        report = orchestrator.run()

        assert report.state is TrainingState.CANCELLED
        assert orchestrator.state is TrainingState.CANCELLED

    def test_cancel_during_extraction(self, config):
        orchestrator, trainer = make_orchestrator(config, {label: 10.0 for label in config.labels})
        orchestrator.extractor.add_progress_listener(
            lambda progress: orchestrator.cancel() if progress.completed_count >= 20 else None)

        report = orchestrator.run()

        assert report.state is TrainingState.CANCELLED
        assert report.extraction.completed_count < report.extraction.total_count
        trainer.train.assert_not_called()
        trainer.cancel.assert_called()

    def test_leftover_label_folders_are_removed(self, config):
        leftover = config.training_data_dir / 'Up'
        leftover.mkdir(parents=True)
        (leftover / 'old.jpg').write_bytes(b'old')

        orchestrator, _ = make_orchestrator(config, {label: 0.1 for label in config.labels})
        orchestrator.run()

        assert sorted(p.name for p in config.training_data_dir.iterdir()) == sorted(config.labels)

    def test_video_with_nothing_to_sample_is_reported(self, config):
        durations = {label: 0.5 for label in config.labels}
        durations['South'] = 0.0
        trainer = MagicMock()
        result = fake_training_result(config)
        result.labels = ['East', 'North', 'West']
        trainer.train.return_value = result
        orchestrator, _ = make_orchestrator(config, durations, trainer=trainer)

        report = orchestrator.run()

        assert report.state is TrainingState.FINISHED
        assert report.is_partial
        assert list(report.failed_sources) == ['South']

    def test_label_missing_from_model_is_reported(self, config):
        trainer = MagicMock()
        result = fake_training_result(config)
        result.labels = ['East', 'North', 'West']
        trainer.train.return_value = result
        orchestrator, _ = make_orchestrator(config, {label: 0.1 for label in config.labels}, trainer=trainer)

        report = orchestrator.run()

        assert report.state is TrainingState.FINISHED
        assert not report.extraction.is_partial
        assert report.is_partial
        assert report.failed_sources == {'South': 'No training images'}

    def test_cancel_between_extraction_and_training(self, config):
        orchestrator, trainer = make_orchestrator(config, {label: 0.1 for label in config.labels})
        wait = orchestrator.extractor.wait

        def wait_then_cancel(timeout=None):
            result = wait(timeout)
            orchestrator.cancel()
            return result

        orchestrator.extractor.wait = wait_then_cancel
        report = orchestrator.run()

        assert report.state is TrainingState.CANCELLED
        trainer.train.assert_not_called()

    def test_cancel_while_idle_does_not_affect_next_run(self, config):
        orchestrator, trainer = make_orchestrator(config, {label: 0.1 for label in config.labels})
        orchestrator.cancel()
        trainer.cancel.assert_not_called()

        report = orchestrator.run()

        assert report.state is TrainingState.FINISHED
        trainer.reset.assert_called_once()

    def test_run_after_cancelled_run(self, config):
        trainer = MagicMock()
        trainer.train.side_effect = [TrainingCancelled(), fake_training_result(config)]
        orchestrator, _ = make_orchestrator(config, {label: 0.1 for label in config.labels}, trainer=trainer)

        assert orchestrator.run().state is TrainingState.CANCELLED
        assert orchestrator.run().state is TrainingState.FINISHED
        assert trainer.reset.call_count == 2
