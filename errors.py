class ExtractionError(Exception):
    """Base class for failures while turning videos into training images."""


class SourceUnavailable(ExtractionError):
    """The video of a labeled source is missing or cannot be decoded."""


class SourceTimeout(SourceUnavailable):
    pass


class FrameProcessingError(ExtractionError):
    """A single frame could not be cropped, resized or encoded."""


# shorter name used by callers of FrameProcessor
ProcessingError = FrameProcessingError


class WriteError(ExtractionError):
    """An encoded image could not be written to disk."""


class TrainingError(Exception):
    pass


class TrainingCancelled(TrainingError):
    pass


class ClassifierNotReady(RuntimeError):
    pass


class CameraUnavailable(RuntimeError):
    pass
