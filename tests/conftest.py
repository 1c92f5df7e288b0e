"""
Pytest Configuration for ExamGuard Tests
"""
import asyncio
import time
from datetime import datetime

import cv2
import numpy as np
import pytest

from examguard.config import Settings
from examguard.models.schemas import Exam, Option, Question
from examguard.monitoring.detection import DetectionStrategy
from examguard.stores.results import ResultStore


class FakeCamera:
    """Stands in for cv2.VideoCapture; frames have a white left half."""

    def __init__(self, index=0, opened=True, frame_shape=(48, 64, 3), fail_after=None,
                 fail_at_width=None, reopen_ok=True):
        self.index = index
        self.opened = opened
        self.frame_shape = frame_shape
        self.fail_after = fail_after
        self.fail_at_width = fail_at_width
        self.reopen_ok = reopen_ok
        self.props = {}
        self.reads = 0
        self.release_count = 0
        self.open_calls = 0

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def read(self):
        if not self.opened:
            return False, None
        if self.fail_at_width is not None and self.props.get(cv2.CAP_PROP_FRAME_WIDTH) == self.fail_at_width:
            return False, None
        if self.fail_after is not None and self.reads >= self.fail_after:
            return False, None
        self.reads += 1
        frame = np.zeros(self.frame_shape, dtype=np.uint8)
        frame[:, : self.frame_shape[1] // 2] = 255
        return True, frame

    def open(self, index):
        self.open_calls += 1
        if self.reopen_ok:
            self.opened = True
        return self.opened

    def release(self):
        self.opened = False
        self.release_count += 1


class CameraFactory:
    """
    Device factory handing out FakeCameras. Each plan (a dict of FakeCamera
    kwargs, or the string "denied") is used for one open call, in order.
    """

    def __init__(self, *plans):
        self.plans = list(plans)
        self.created = []

    def __call__(self, index):
        plan = self.plans.pop(0) if self.plans else {}
        if plan == "denied":
            raise PermissionError("camera permission denied by user")
        camera = FakeCamera(index, **plan)
        self.created.append(camera)
        return camera


class ScriptedStrategy(DetectionStrategy):
    """Returns prepared signal batches, one per tick."""

    name = "scripted"

    def __init__(self, batches=None, error=None, load_error=None):
        self.batches = list(batches or [])
        self.error = error
        self.load_error = load_error
        self.calls = 0
        self.released = False

    def load(self):
        if self.load_error is not None:
            raise self.load_error

    def analyze(self, frame):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.batches.pop(0) if self.batches else []

    def release(self):
        self.released = True


class CountingResultStore(ResultStore):
    def __init__(self, fail=False):
        super().__init__()
        self.save_calls = 0
        self.fail = fail

    def save(self, draft):
        self.save_calls += 1
        if self.fail:
            raise IOError("result storage offline")
        return super().save(draft)


async def wait_until(predicate, timeout=3.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings():
    """Settings with short intervals so loops run quickly in tests."""
    return Settings(
        _env_file=None,
        frame_rate=200,
        bind_timeout_seconds=1.0,
        health_check_interval_seconds=0.02,
        stall_timeout_seconds=0.3,
        max_recovery_attempts=2,
        detection_interval_seconds=0.01,
        countdown_tick_seconds=1.0,
        detection_strategy="random",
        random_violation_probability=0.0,
    )


def make_exam(question_count=3, time_limit_minutes=10, exam_id="exam-1"):
    questions = [
        Question(
            id=f"q{i}",
            text=f"Question {i}?",
            options=[Option(id="a", text="Right"), Option(id="b", text="Wrong"), Option(id="c", text="Also wrong")],
            correct_option_id="a",
        )
        for i in range(1, question_count + 1)
    ]
    return Exam(
        id=exam_id,
        title="Sample exam",
        description="Proctored test",
        teacher_id="teacher-1",
        questions=questions,
        time_limit_minutes=time_limit_minutes,
        created_at=datetime.now(),
    )


@pytest.fixture
def exam():
    return make_exam()


@pytest.fixture
def results():
    return CountingResultStore()


@pytest.fixture
def camera_factory():
    return CameraFactory()


def exam_draft_payload(teacher_id="teacher-1", time_limit_minutes=10):
    return {
        "title": "Biology midterm",
        "description": "Cells and organelles",
        "teacher_id": teacher_id,
        "time_limit_minutes": time_limit_minutes,
        "questions": [
            {
                "id": f"q{i}",
                "text": f"Question {i}?",
                "options": [{"id": "a", "text": "Right"}, {"id": "b", "text": "Wrong"}],
                "correct_option_id": "a",
            }
            for i in range(1, 4)
        ],
    }


@pytest.fixture(autouse=True)
def no_video_device_nodes(monkeypatch):
    """Keep the host's real /dev/video* nodes out of capture error mapping."""
    monkeypatch.setattr(
        "examguard.monitoring.capture.video_device_path",
        lambda index: f"/nonexistent/video{index}",
    )
