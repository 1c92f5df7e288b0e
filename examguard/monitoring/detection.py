"""
Signal Detection

A SignalDetector runs one interchangeable DetectionStrategy against the latest
frame on every tick and returns candidate violation signals. It only reads
frames; recording the signals is the aggregator's job.
"""
import logging
import random
import threading
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from examguard.config import Settings
from examguard.errors import DetectorUnavailableError
from examguard.models.schemas import Signal, SignalSource, ViolationKind

logger = logging.getLogger(__name__)


class DetectionStrategy(ABC):
    """Turns one frame into zero or more signals."""

    name = "base"

    def load(self):
        """Prepare models. Raise DetectorUnavailableError if that is impossible."""

    @abstractmethod
    def analyze(self, frame: np.ndarray) -> List[Signal]:
        ...

    def release(self):
        """Free model resources."""


class RandomDetectionStrategy(DetectionStrategy):
    """
    Stand-in for real camera analysis: each tick manufactures a signal with a
    fixed low probability. Used for offline operation and demos.
    """

    name = "random"
    DEFAULT_KINDS = (
        ViolationKind.MULTIPLE_PEOPLE,
        ViolationKind.DEVICE_DETECTED,
        ViolationKind.NO_FACE_OR_AWAY,
    )

    def __init__(
        self,
        probability: float = 0.03,
        kinds: Sequence[ViolationKind] = DEFAULT_KINDS,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= probability <= 1.0:
            raise ValueError("probability must be between 0 and 1")
        self.probability = probability
        self.kinds = list(kinds)
        self.rng = rng or random.Random()

    def analyze(self, frame: np.ndarray) -> List[Signal]:
        if self.rng.random() >= self.probability:
            return []
        kind = self.rng.choice(self.kinds)
        return [Signal(kind=kind, detail=f"Simulated detection of {kind.value}")]


class FaceModelDetectionStrategy(DetectionStrategy):
    """
    Face-count and head-rotation policy backed by MediaPipe:
    no face -> no_face_or_away, several faces -> multiple_people,
    one face rotated past the threshold -> no_face_or_away.
    """

    name = "face_model"

    def __init__(
        self,
        rotation_threshold_degrees: float = 30.0,
        min_detection_confidence: float = 0.5,
        face_detector=None,
        eye_tracker=None,
    ):
        self.rotation_threshold_degrees = rotation_threshold_degrees
        self.min_detection_confidence = min_detection_confidence
        self.face_detector = face_detector
        self.eye_tracker = eye_tracker

    def load(self):
        if self.face_detector is None:
            from examguard.monitoring.face_detector import FaceDetector
            self.face_detector = FaceDetector(self.min_detection_confidence)
        if self.eye_tracker is None:
            from examguard.monitoring.eye_tracker import EyeTracker
            self.eye_tracker = EyeTracker(self.min_detection_confidence)

    def analyze(self, frame: np.ndarray) -> List[Signal]:
        face_count = self.face_detector.count_faces(frame)
        if face_count == 0:
            return [Signal(kind=ViolationKind.NO_FACE_OR_AWAY, detail="No face detected")]
        if face_count > 1:
            return [Signal(kind=ViolationKind.MULTIPLE_PEOPLE, detail=f"{face_count} faces detected")]

        rotation = self.eye_tracker.head_rotation(frame)
        if rotation is not None and abs(rotation) > self.rotation_threshold_degrees:
            return [Signal(
                kind=ViolationKind.NO_FACE_OR_AWAY,
                detail=f"Head rotated {abs(rotation):.1f} degrees",
            )]
        return []

    def release(self):
        for model in (self.face_detector, self.eye_tracker):
            if model is not None:
                model.release()
        self.face_detector = None
        self.eye_tracker = None


def build_strategy(settings: Settings) -> DetectionStrategy:
    """Select the detection strategy named in settings."""
    if settings.detection_strategy == RandomDetectionStrategy.name:
        return RandomDetectionStrategy(probability=settings.random_violation_probability)
    if settings.detection_strategy == FaceModelDetectionStrategy.name:
        return FaceModelDetectionStrategy(
            rotation_threshold_degrees=settings.head_rotation_threshold_degrees,
            min_detection_confidence=settings.min_detection_confidence,
        )
    raise DetectorUnavailableError(f"Unknown detection strategy: {settings.detection_strategy!r}")


class SignalDetector:
    def __init__(self):
        self.strategy: Optional[DetectionStrategy] = None
        # Guards the strategy swap only; detection passes run outside it.
        self._lock = threading.Lock()
        self._passes_running = 0
        self._retired: List[DetectionStrategy] = []

    @property
    def is_configured(self) -> bool:
        return self.strategy is not None

    def configure(self, strategy: DetectionStrategy):
        """
        Load and install a strategy, replacing any previous one.

        Raises:
            DetectorUnavailableError: the strategy's models could not be loaded
        """
        try:
            strategy.load()
        except DetectorUnavailableError:
            raise
        except Exception as e:
            raise DetectorUnavailableError(f"Failed to load {strategy.name} strategy: {e}") from e

        with self._lock:
            previous, self.strategy = self.strategy, strategy
        if previous is not None and previous is not strategy:
            self._retire(previous)
        logger.info("Signal detector configured with %s strategy", strategy.name)

    def tick(self, frame: Optional[np.ndarray]) -> List[Signal]:
        """Analyze one frame. Strategy failures are logged and yield no signals."""
        if frame is None or frame.size == 0:
            return []
        with self._lock:
            strategy = self.strategy
            if strategy is None:
                return []
            self._passes_running += 1
        try:
            signals = strategy.analyze(frame)
        except Exception:
            logger.exception("Detection pass with %s strategy failed; skipping tick", strategy.name)
            return []
        finally:
            self._finish_pass()
        return [
            signal if signal.source is SignalSource.DETECTOR
            else signal.model_copy(update={"source": SignalSource.DETECTOR})
            for signal in signals
        ]

    def release(self):
        """
        Drop the strategy. Never waits for a running pass: a strategy still in
        use is released by the pass that finishes last.
        """
        with self._lock:
            strategy, self.strategy = self.strategy, None
        if strategy is not None:
            self._retire(strategy)

    def _retire(self, strategy: DetectionStrategy):
        with self._lock:
            if self._passes_running:
                self._retired.append(strategy)
                logger.debug("Deferring release of %s strategy until the running pass ends", strategy.name)
                return
        strategy.release()

    def _finish_pass(self):
        with self._lock:
            self._passes_running -= 1
            retired = self._retired if self._passes_running == 0 else []
            if retired:
                self._retired = []
        for strategy in retired:
            strategy.release()
