import pytest

import main as main_module
from image_generator import ExtractionProgress
from main import ProgressBar, main


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    monkeypatch.setattr(main_module, 'setup_logging', lambda **kwargs: None)


@pytest.fixture
def conf_file(tmp_path):
    path = tmp_path / 'conf.yml'
    path.write_text(f'root: {tmp_path / "workspace"}\nlabels: [North, East]\n')
    return path


def test_status(conf_file, capsys):
    assert main(['--config', str(conf_file), 'status']) == 0
    out = capsys.readouterr().out
    assert 'North' in out
    assert 'not trained' in out


def test_extract_without_videos_reports_failed_sources(conf_file, capsys):
    assert main(['--config', str(conf_file), 'extract']) == 1
    out = capsys.readouterr().out
    assert 'Failed sources' in out
    assert 'North' in out and 'East' in out


def test_extract_from_videos(conf_file, tmp_path, make_video, capsys):
    for label in ('North', 'East'):
        make_video(f'workspace/Video/{label}.mp4', frames=5, fps=10.0)

    assert main(['--config', str(conf_file), 'extract']) == 0
    assert 'Generated 50/50 images' in capsys.readouterr().out
    for label in ('North', 'East'):
        assert len(list((tmp_path / 'workspace' / 'TrainingData' / label).glob('*.jpg'))) == 25


def test_classify_without_model(conf_file, capsys):
    assert main(['--config', str(conf_file), 'classify']) == 1
    assert 'No trained model' in capsys.readouterr().out


def test_clear_videos(conf_file, tmp_path, capsys):
    video_dir = tmp_path / 'workspace' / 'Video'
    video_dir.mkdir(parents=True)
    (video_dir / 'North.mp4').write_bytes(b'x')
    assert main(['--config', str(conf_file), 'clear-videos']) == 0
    assert 'Removed 1 recordings' in capsys.readouterr().out
    assert not (video_dir / 'North.mp4').exists()


def test_progress_bar_closes_on_final_event():
    bar = ProgressBar('test')
    bar(ExtractionProgress(1, 2))
    assert bar.bar is not None
    bar(ExtractionProgress(2, 2))
    assert bar.bar is None


def test_unknown_command():
    with pytest.raises(SystemExit):
        main(['fly'])


def test_train_interrupt_waits_for_extraction(conf_file, make_video, monkeypatch, capsys):
    for label in ('North', 'East'):
        make_video(f'workspace/Video/{label}.mp4', frames=20, fps=10.0)
    extractors = []

    def interrupted_run(self):
        self.state = main_module.TrainingState.GENERATING_IMAGES
        self.extractor.start(self.config.sources())
        extractors.append(self.extractor)
        raise KeyboardInterrupt

    monkeypatch.setattr(main_module.TrainingOrchestrator, 'run', interrupted_run)

    assert main(['--config', str(conf_file), 'train']) == 1
    assert 'Cancelled' in capsys.readouterr().out
    assert extractors[0].wait(timeout=0) is not None
