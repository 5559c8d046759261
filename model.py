import torch
import torch.nn as nn
import torchvision.models as models

from config import INPUT_SIZE


class ClassifierWrapper(nn.Module):
    """ResNet-18 feature extractor with a linear classification head."""

    def __init__(self, n_classes=2, pretrained=True):
        super().__init__()
        weights = models.ResNet18_Weights.DEFAULT if pretrained else None
        self.backbone = models.resnet18(weights=weights)
        in_features = self.backbone.fc.in_features
        self.backbone.fc = nn.Identity()
        self.head = nn.Linear(in_features, n_classes)

    def features(self, x):
        return self.backbone(x)

    def forward(self, x):
        return self.head(self.backbone(x))


def save_model(model, path, labels, input_size=INPUT_SIZE):
    torch.save({
        'state_dict': model.state_dict(),
        'labels': list(labels),
        'input_size': input_size,
    }, path)


def load_model(path, device='cpu'):
    checkpoint = torch.load(path, map_location=device)
    labels = checkpoint['labels']
    model = ClassifierWrapper(n_classes=len(labels), pretrained=False)
    model.load_state_dict(checkpoint['state_dict'])
    model.to(device)
    model.eval()
    model.labels = labels
    model.input_size = checkpoint.get('input_size', INPUT_SIZE)
    return model
