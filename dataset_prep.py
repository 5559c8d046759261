import shutil
from pathlib import Path

# Layout under the data root:
#   Video/<label>.mp4            recorded clips
#   TrainingData/<label>/*.jpg   extracted training images
#   MLModel/classifier.pt        trained model


def recreate_dir(path):
    path = Path(path)
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def prepare_directories(config):
    """Start a training run from scratch: empty model dir and one empty dir per label."""
    recreate_dir(config.model_dir)
    # every folder under TrainingData is a class to the trainer
    clear_training_data(config)
    for label in config.labels:
        recreate_dir(config.label_dir(label))


def clear_training_data(config):
    if config.training_data_dir.exists():
        shutil.rmtree(config.training_data_dir)


def count_images(config):
    counts = {}
    for label in config.labels:
        label_dir = config.label_dir(label)
        counts[label] = len(list(label_dir.glob('*.jpg'))) if label_dir.is_dir() else 0
    return counts
