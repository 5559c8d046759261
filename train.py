import copy
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import torch
from torch import nn, optim
from torch.utils.data import DataLoader, Subset
import torchvision.transforms as T
from torchvision.datasets import ImageFolder
from torchvision.datasets.folder import IMG_EXTENSIONS
from tqdm import tqdm
from sklearn.metrics import accuracy_score
from sklearn.model_selection import train_test_split

from config import BATCH_SIZE, EPOCHS, INPUT_SIZE, LR, SEED, VALIDATION_SIZE
from errors import TrainingCancelled, TrainingError
from logger import get_logger
from model import ClassifierWrapper, save_model

logger = get_logger(__name__)

DEVICE = 'cuda' if torch.cuda.is_available() else 'cpu'


@dataclass
class TrainingResult:
    elapsed_time: float
    model_size: int
    training_accuracy: float
    validation_accuracy: float
    model_path: str
    labels: list


class LabeledDirectories(ImageFolder):
    """ImageFolder that ignores label directories without any image (e.g. a failed source)."""

    def find_classes(self, directory):
        classes = sorted(
            entry.name for entry in os.scandir(directory)
            if entry.is_dir() and any(name.lower().endswith(IMG_EXTENSIONS) for name in os.listdir(entry.path))
        )
        if not classes:
            raise FileNotFoundError(f"Couldn't find any labeled images in {directory}")
        return classes, {name: i for i, name in enumerate(classes)}


def make_transform(input_size=INPUT_SIZE):
    return T.Compose([
        T.Resize((input_size, input_size)),
        T.ToTensor(),
        T.Normalize(mean=[0.485, 0.456, 0.406], std=[0.229, 0.224, 0.225])
    ])


def split_indices(targets, validation_size=VALIDATION_SIZE, seed=SEED):
    """Random train/validation split, stratified when every class can spare a sample."""
    n = len(targets)
    if n < 2:
        raise TrainingError(f'Need at least 2 images to train, found {n}')
    n_val = min(n - 1, max(1, round(n * validation_size)))
    n_classes = len(set(targets))
    counts = [targets.count(c) for c in set(targets)]
    stratify = targets if min(counts) >= 2 and n_classes <= n_val <= n - n_classes else None
    indices = list(range(n))
    train_idx, val_idx = train_test_split(indices, test_size=n_val, random_state=seed, stratify=stratify)
    return train_idx, val_idx


class Trainer:
    """
    Transfer learning: features from a pretrained ResNet-18 are computed once,
    then only the linear head is fitted. train() blocks; cancel() may be
    called from another thread.
    """

    def __init__(self, batch_size=BATCH_SIZE, lr=LR, epochs=EPOCHS, input_size=INPUT_SIZE,
                 validation_size=VALIDATION_SIZE, pretrained=True, seed=SEED, device=DEVICE):
        self.batch_size = batch_size
        self.lr = lr
        self.epochs = epochs
        self.input_size = input_size
        self.validation_size = validation_size
        self.pretrained = pretrained
        self.seed = seed
        self.device = device
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    def reset(self):
        """Forget an earlier cancel(); train() itself never does."""
        self._cancelled.clear()

    def _check_cancelled(self):
        if self._cancelled.is_set():
            raise TrainingCancelled('Training was cancelled')

    def extract_features(self, model, dataset):
        loader = DataLoader(dataset, batch_size=self.batch_size, shuffle=False, num_workers=0)
        feats, labels = [], []
        model.eval()
        with torch.no_grad():
            for imgs, ys in tqdm(loader, desc='Extracting features', leave=False):
                self._check_cancelled()
                feats.append(model.features(imgs.to(self.device)).cpu())
                labels.append(ys)
        return torch.cat(feats), torch.cat(labels)

    def fit_head(self, head, train_x, train_y, val_x, val_y):
        criterion = nn.CrossEntropyLoss()
        optimizer = optim.Adam(head.parameters(), lr=self.lr)
        generator = torch.Generator().manual_seed(self.seed)

        best_val_acc = -1.0
        best_state = copy.deepcopy(head.state_dict())
        for epoch in range(self.epochs):
            head.train()
            perm = torch.randperm(len(train_x), generator=generator)
            for i in range(0, len(perm), self.batch_size):
                self._check_cancelled()
                idx = perm[i:i + self.batch_size]
                loss = criterion(head(train_x[idx]), train_y[idx])
                optimizer.zero_grad()
                loss.backward()
                optimizer.step()

            val_acc = self.accuracy(head, val_x, val_y)
            logger.debug('Epoch %d/%d: loss %.4f, validation accuracy %.4f', epoch + 1, self.epochs, loss.item(), val_acc)
            if val_acc > best_val_acc:
                best_val_acc = val_acc
                best_state = copy.deepcopy(head.state_dict())

        head.load_state_dict(best_state)
        return best_val_acc

    @staticmethod
    def accuracy(head, x, y):
        head.eval()
        with torch.no_grad():
            preds = head(x).argmax(dim=1)
        return accuracy_score(y.numpy().tolist(), preds.numpy().tolist())

    def train(self, data_dir, model_path) -> TrainingResult:
        self._check_cancelled()
        started = time.monotonic()

        try:
            dataset = LabeledDirectories(data_dir, transform=make_transform(self.input_size))
        except FileNotFoundError as e:
            raise TrainingError(str(e)) from e
        labels = dataset.classes
        if len(labels) < 2:
            raise TrainingError(f'Need images for at least 2 labels, found {labels}')
        logger.info('Training on %d images, labels: %s', len(dataset), ', '.join(labels))

        train_idx, val_idx = split_indices(dataset.targets, self.validation_size, self.seed)

        model = ClassifierWrapper(n_classes=len(labels), pretrained=self.pretrained).to(self.device)
        train_x, train_y = self.extract_features(model, Subset(dataset, train_idx))
        val_x, val_y = self.extract_features(model, Subset(dataset, val_idx))

        head = model.head.cpu()
        val_acc = self.fit_head(head, train_x, train_y, val_x, val_y)
        train_acc = self.accuracy(head, train_x, train_y)
        model.head = head.to(self.device)

        model_path = Path(model_path)
        model_path.parent.mkdir(parents=True, exist_ok=True)
        save_model(model, model_path, labels, self.input_size)

        result = TrainingResult(
            elapsed_time=time.monotonic() - started,
            model_size=model_path.stat().st_size,
            training_accuracy=train_acc * 100,
            validation_accuracy=val_acc * 100,
            model_path=str(model_path),
            labels=list(labels),
        )
        logger.info('Training finished in %.1fs: train acc %.0f%%, val acc %.0f%%',
                    result.elapsed_time, result.training_accuracy, result.validation_accuracy)
        return result
