"""
Exam Session State Machine

Drives one test-taker through one exam:
NOT_STARTED -> IN_PROGRESS -> COMPLETED | FAILED.

The countdown, detection and capture health loops run as independent asyncio
tasks. Whatever reaches _terminate first (a violation crossing the threshold,
the clock reaching zero, a submission or an explicit stop) decides the
outcome; every later trigger is ignored.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from examguard.config import Settings
from examguard.errors import (
    CaptureError,
    ExamAlreadyTakenError,
    InvalidAnswerError,
    SessionStateError,
)
from examguard.models.schemas import (
    EndReason,
    Exam,
    ExamResult,
    ExamResultDraft,
    Question,
    SessionStatus,
    Signal,
    SignalSource,
    ViolationEvent,
    ViolationKind,
)
from examguard.monitoring.aggregator import ViolationAggregator
from examguard.monitoring.capture import CaptureHandle, CaptureSessionManager, FrameSink
from examguard.monitoring.detection import DetectionStrategy, SignalDetector, build_strategy
from examguard.monitoring.focus_monitor import EnvironmentEventSource, FocusMonitor
from examguard.stores.results import ResultStore

logger = logging.getLogger(__name__)


def score_answers(exam: Exam, answers: Mapping[str, str]) -> int:
    """Number of questions whose recorded answer is the correct option."""
    return sum(1 for question in exam.questions if answers.get(question.id) == question.correct_option_id)


class ExamSession:
    def __init__(
        self,
        exam: Exam,
        student_id: str,
        *,
        settings: Settings,
        result_store: ResultStore,
        capture: Optional[CaptureSessionManager] = None,
        detector: Optional[SignalDetector] = None,
        strategy: Optional[DetectionStrategy] = None,
        environment: Optional[EnvironmentEventSource] = None,
        violation_threshold: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
        session_id: Optional[str] = None,
    ):
        if violation_threshold is None:
            violation_threshold = settings.violation_threshold
        if violation_threshold < 1:
            raise ValueError("violation_threshold must be at least 1")

        self.id = session_id or uuid.uuid4().hex
        self.exam = exam
        self.student_id = student_id
        self.settings = settings
        self.violation_threshold = violation_threshold

        self.capture = capture or CaptureSessionManager(settings)
        self.detector = detector or SignalDetector()
        self.environment = environment or EnvironmentEventSource()
        self.sink = FrameSink(mirror=settings.mirror_sink)
        self.aggregator = ViolationAggregator(clock=clock)
        self.focus_monitor = FocusMonitor(self.environment, self.report_signal)
        self._strategy = strategy
        self._result_store = result_store
        self._clock = clock

        self._status = SessionStatus.NOT_STARTED
        self._answers: Dict[str, str] = {}
        self.current_question_index = 0
        self.remaining_seconds = exam.time_limit_minutes * 60
        self.started_at: Optional[datetime] = None
        self.ended_at: Optional[datetime] = None
        self.end_reason: Optional[EndReason] = None
        self.score: Optional[int] = None
        self.result: Optional[ExamResult] = None
        self.persist_error: Optional[Exception] = None

        self._handle: Optional[CaptureHandle] = None
        self._tasks: List[asyncio.Task] = []
        self._subscribers: List[asyncio.Queue] = []
        self._starting = False
        self._stopped = False

    # ---- read-only views ----

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def answers(self) -> Dict[str, str]:
        return dict(self._answers)

    @property
    def violations(self) -> List[ViolationEvent]:
        return self.aggregator.snapshot()

    @property
    def current_question(self) -> Question:
        return self.exam.questions[self.current_question_index]

    @property
    def on_last_question(self) -> bool:
        return self.current_question_index == len(self.exam.questions) - 1

    # ---- lifecycle ----

    async def start(self):
        """
        NOT_STARTED -> IN_PROGRESS.

        Raises:
            ExamAlreadyTakenError: the student already has a result for this exam
            DetectorUnavailableError: the detection strategy could not be loaded
            CaptureError: the camera could not be acquired or produced no frames
            SessionStateError: the session was already started or stopped
        """
        if self._status is not SessionStatus.NOT_STARTED or self._starting or self._stopped:
            raise SessionStateError(f"Session {self.id} cannot start from {self._status.value}")
        if self._result_store.has_taken(self.student_id, self.exam.id):
            raise ExamAlreadyTakenError(f"Student {self.student_id} has already taken exam {self.exam.id}")

        self._starting = True
        try:
            self.detector.configure(self._strategy or build_strategy(self.settings))
            self._handle = await self.capture.acquire()
            await self.capture.bind_sink(self._handle, self.sink)
            if self._stopped:
                raise SessionStateError(f"Session {self.id} was stopped while starting")
        except BaseException:
            self.capture.release(self._handle)
            self._handle = None
            self.detector.release()
            raise
        finally:
            self._starting = False

        self._status = SessionStatus.IN_PROGRESS
        self.started_at = self._clock()
        self.remaining_seconds = self.exam.time_limit_minutes * 60
        self.aggregator.register_callback(self._on_violation)
        self.focus_monitor.attach()
        self.capture.watch(self._handle, on_lost=self._on_capture_lost)
        self._tasks = [
            asyncio.create_task(self._run_countdown(), name=f"countdown-{self.id}"),
            asyncio.create_task(self._run_detection(), name=f"detection-{self.id}"),
        ]
        logger.info(
            "Session %s started: student=%s exam=%s time_limit=%ds threshold=%d",
            self.id, self.student_id, self.exam.id, self.remaining_seconds, self.violation_threshold,
        )

    def set_answer(self, question_id: str, option_id: str) -> bool:
        """Record an answer (last write wins). Returns False when the session is not in progress."""
        if self._status is not SessionStatus.IN_PROGRESS:
            return False
        question = self.exam.get_question(question_id)
        if question is None:
            raise InvalidAnswerError(f"Unknown question {question_id!r}")
        if not question.has_option(option_id):
            raise InvalidAnswerError(f"Option {option_id!r} does not belong to question {question_id!r}")
        self._answers[question_id] = option_id
        return True

    def next_question(self) -> int:
        self.current_question_index = min(self.current_question_index + 1, len(self.exam.questions) - 1)
        return self.current_question_index

    def previous_question(self) -> int:
        self.current_question_index = max(self.current_question_index - 1, 0)
        return self.current_question_index

    def submit(self) -> bool:
        """Manual submission from the final question. Returns False if the session already ended."""
        if self._status is not SessionStatus.IN_PROGRESS:
            return False
        if not self.on_last_question:
            raise SessionStateError("Exam can only be submitted from the final question")
        return self._terminate(SessionStatus.COMPLETED, EndReason.SUBMITTED)

    def stop(self) -> bool:
        """
        End the session from outside. A running exam is completed with
        reason STOPPED; on any other state this only releases resources.
        Safe to call any number of times.
        """
        self._stopped = True
        if self._status is SessionStatus.IN_PROGRESS:
            return self._terminate(SessionStatus.COMPLETED, EndReason.STOPPED)
        if self._starting:
            self.capture.release(self._handle)
        return False

    def report_signal(self, signal: Signal) -> Optional[ViolationEvent]:
        """Hand a signal to the violation log. Ignored unless the session is in progress."""
        if self._status is not SessionStatus.IN_PROGRESS:
            logger.debug("Session %s ignoring %s signal while %s", self.id, signal.kind.value, self._status.value)
            return None
        return self.aggregator.record(signal)

    # ---- observers ----

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue:
        """Queue receiving violation and termination notifications."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _notify(self, message: dict):
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full for session %s; dropping %s", self.id, message["type"])

    # ---- internals ----

    def _on_violation(self, event: ViolationEvent):
        self._notify({"type": "violation", "session_id": self.id, **event.model_dump(mode="json")})
        if len(self.aggregator) >= self.violation_threshold:
            logger.warning(
                "Session %s reached %d violation(s); failing exam",
                self.id, len(self.aggregator),
            )
            self._terminate(SessionStatus.FAILED, EndReason.VIOLATION)

    def _on_capture_lost(self, error: CaptureError):
        self.report_signal(Signal(
            kind=ViolationKind.OTHER,
            detail=f"Camera feed lost: {error}",
            source=SignalSource.CAPTURE,
        ))
        # Without a handle nothing is monitored any more; the exam cannot go on.
        if self._status is SessionStatus.IN_PROGRESS:
            logger.error("Session %s lost its camera for good; failing exam", self.id)
            self._terminate(SessionStatus.FAILED, EndReason.CAPTURE_LOST)

    async def _run_countdown(self):
        while self._status is SessionStatus.IN_PROGRESS:
            await asyncio.sleep(self.settings.countdown_tick_seconds)
            if self._status is not SessionStatus.IN_PROGRESS:
                return
            self.remaining_seconds = max(self.remaining_seconds - 1, 0)
            if self.remaining_seconds == 0:
                logger.info("Time expired for session %s", self.id)
                self._terminate(SessionStatus.COMPLETED, EndReason.TIME_EXPIRED)

    async def _run_detection(self):
        while self._status is SessionStatus.IN_PROGRESS:
            await asyncio.sleep(self.settings.detection_interval_seconds)
            if self._status is not SessionStatus.IN_PROGRESS:
                return
            frame = self.sink.latest_frame()
            if frame is None:
                continue
            signals = await asyncio.to_thread(self.detector.tick, frame)
            for signal in signals:
                self.report_signal(signal)

    def _terminate(self, status: SessionStatus, reason: EndReason) -> bool:
        # Single termination guard: only the first caller gets past this check.
        if self._status is not SessionStatus.IN_PROGRESS:
            return False
        self._status = status
        self.end_reason = reason
        self.ended_at = self._clock()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks = []
        self.focus_monitor.detach()
        self.capture.release(self._handle)
        self._handle = None
        self.aggregator.seal()
        self.detector.release()

        self.score = 0 if status is SessionStatus.FAILED else score_answers(self.exam, self._answers)
        draft = ExamResultDraft(
            exam_id=self.exam.id,
            student_id=self.student_id,
            score=self.score,
            total_questions=len(self.exam.questions),
            answers=dict(self._answers),
            violations=self.aggregator.snapshot(),
            start_time=self.started_at,
            end_time=self.ended_at,
            status=status,
            end_reason=reason,
        )
        try:
            self.result = self._result_store.save(draft)
        except Exception as e:
            logger.exception("Failed to persist result for session %s", self.id)
            self.persist_error = e

        logger.info(
            "Session %s ended: status=%s reason=%s score=%d/%d violations=%d",
            self.id, status.value, reason.value, self.score, len(self.exam.questions), len(self.aggregator),
        )
        self._notify({
            "type": "terminated",
            "session_id": self.id,
            "status": status.value,
            "end_reason": reason.value,
            "score": self.score,
            "total_questions": len(self.exam.questions),
        })
        return True
