"""
Tests for the Exam Session State Machine
"""
import asyncio
from datetime import datetime

import pytest

from conftest import CameraFactory, CountingResultStore, ScriptedStrategy, make_exam, wait_until
from examguard.errors import (
    CaptureError,
    CaptureFailureReason,
    DetectorUnavailableError,
    ExamAlreadyTakenError,
    InvalidAnswerError,
    SessionStateError,
)
from examguard.models.schemas import (
    EndReason,
    ExamResultDraft,
    SessionStatus,
    Signal,
    ViolationKind,
)
from examguard.monitoring.capture import CaptureSessionManager
from examguard.monitoring.focus_monitor import EnvironmentEvent
from examguard.session.exam_session import ExamSession, score_answers


def build_session(exam, settings, results, factory=None, strategy=None, **kwargs):
    factory = factory or CameraFactory()
    return ExamSession(
        exam,
        "student-1",
        settings=settings,
        result_store=results,
        capture=CaptureSessionManager(settings, factory),
        strategy=strategy or ScriptedStrategy(),
        **kwargs,
    )


def answer_all(session, option_id="a"):
    for question in session.exam.questions:
        session.set_answer(question.id, option_id)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_runs_the_exam(self, exam, settings, results):
        factory = CameraFactory()
        session = build_session(exam, settings, results, factory)

        await session.start()

        assert session.status is SessionStatus.IN_PROGRESS
        assert session.remaining_seconds == 600
        assert session.started_at is not None
        assert session.sink.is_producing()
        assert session.environment.listener_count() == 4
        session.stop()

    @pytest.mark.asyncio
    async def test_already_taken_is_rejected_before_capture(self, exam, settings, results):
        results.save(ExamResultDraft(
            exam_id=exam.id, student_id="student-1", score=3, total_questions=3, answers={},
            violations=[], start_time=datetime.now(), end_time=datetime.now(),
            status=SessionStatus.COMPLETED, end_reason=EndReason.SUBMITTED,
        ))
        factory = CameraFactory()
        session = build_session(exam, settings, results, factory)

        with pytest.raises(ExamAlreadyTakenError):
            await session.start()

        assert factory.created == []
        assert session.status is SessionStatus.NOT_STARTED

    @pytest.mark.asyncio
    async def test_capture_denied_keeps_session_not_started(self, exam, settings, results):
        strategy = ScriptedStrategy()
        session = build_session(exam, settings, results, CameraFactory("denied", "denied"), strategy)

        with pytest.raises(CaptureError) as exc_info:
            await session.start()

        assert exc_info.value.reason is CaptureFailureReason.PERMISSION_DENIED
        assert session.status is SessionStatus.NOT_STARTED
        assert strategy.released
        assert session.environment.listener_count() == 0

    @pytest.mark.asyncio
    async def test_detector_unavailable_allocates_no_capture(self, exam, settings, results):
        factory = CameraFactory()
        strategy = ScriptedStrategy(load_error=RuntimeError("model missing"))
        session = build_session(exam, settings, results, factory, strategy)

        with pytest.raises(DetectorUnavailableError):
            await session.start()

        assert factory.created == []
        assert session.status is SessionStatus.NOT_STARTED

    @pytest.mark.asyncio
    async def test_stalled_stream_releases_camera(self, exam, settings, results):
        settings = settings.model_copy(update={"bind_timeout_seconds": 0.1})
        factory = CameraFactory({"fail_after": 1})
        session = build_session(exam, settings, results, factory)

        with pytest.raises(CaptureError):
            await session.start()

        assert factory.created[0].release_count == 1
        assert session.status is SessionStatus.NOT_STARTED

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()

        with pytest.raises(SessionStateError):
            await session.start()
        session.stop()

    def test_threshold_must_be_positive(self, exam, settings, results):
        with pytest.raises(ValueError):
            build_session(exam, settings, results, violation_threshold=0)


class TestAnswersAndNavigation:
    @pytest.mark.asyncio
    async def test_last_answer_wins(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()

        session.set_answer("q1", "b")
        session.set_answer("q1", "a")

        assert session.answers == {"q1": "a"}
        session.stop()

    @pytest.mark.asyncio
    async def test_invalid_answers_are_rejected(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()

        with pytest.raises(InvalidAnswerError):
            session.set_answer("q9", "a")
        with pytest.raises(InvalidAnswerError):
            session.set_answer("q1", "z")
        session.stop()

    def test_answers_before_start_are_ignored(self, exam, settings, results):
        session = build_session(exam, settings, results)
        assert session.set_answer("q1", "a") is False
        assert session.answers == {}

    def test_navigation_is_bounded(self, exam, settings, results):
        session = build_session(exam, settings, results)

        assert session.previous_question() == 0
        assert session.next_question() == 1
        assert session.next_question() == 2
        assert session.next_question() == 2
        assert session.on_last_question
        assert session.status is SessionStatus.NOT_STARTED

    @pytest.mark.asyncio
    async def test_submit_only_from_final_question(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()

        with pytest.raises(SessionStateError):
            session.submit()
        assert session.status is SessionStatus.IN_PROGRESS
        session.stop()


class TestScenarios:
    @pytest.mark.asyncio
    async def test_zero_tolerance_failure(self, exam, settings, results):
        factory = CameraFactory()
        session = build_session(exam, settings, results, factory)
        await session.start()
        session.set_answer("q1", "a")

        session.report_signal(Signal(kind=ViolationKind.MULTIPLE_PEOPLE, detail="2 faces detected"))

        assert session.status is SessionStatus.FAILED
        assert session.end_reason is EndReason.VIOLATION
        assert session.score == 0
        assert session.result.score == 0
        assert session.result.status is SessionStatus.FAILED
        assert [v.kind for v in session.result.violations] == [ViolationKind.MULTIPLE_PEOPLE]
        assert results.save_calls == 1
        assert factory.created[0].release_count == 1
        assert session.capture.handle is None
        assert session.ended_at is not None

    @pytest.mark.asyncio
    async def test_detector_signal_fails_the_exam(self, exam, settings, results):
        strategy = ScriptedStrategy([[], [Signal(kind=ViolationKind.DEVICE_DETECTED)]])
        session = build_session(exam, settings, results, strategy=strategy)
        await session.start()
        answer_all(session)

        await wait_until(lambda: session.status.is_terminal)

        assert session.status is SessionStatus.FAILED
        assert session.result.score == 0
        assert session.result.answers == {"q1": "a", "q2": "a", "q3": "a"}
        assert strategy.released

    @pytest.mark.asyncio
    async def test_clean_completion(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()
        answer_all(session)
        session.next_question()
        session.next_question()

        assert session.submit() is True

        assert session.status is SessionStatus.COMPLETED
        assert session.end_reason is EndReason.SUBMITTED
        assert session.result.score == 3
        assert session.result.total_questions == 3
        assert session.violations == []
        assert results.save_calls == 1

    @pytest.mark.asyncio
    async def test_countdown_expiry_completes_with_zero(self, settings, results):
        settings = settings.model_copy(update={"countdown_tick_seconds": 0.002})
        exam = make_exam(question_count=1, time_limit_minutes=1)
        session = build_session(exam, settings, results)
        await session.start()

        await wait_until(lambda: session.status.is_terminal, timeout=5.0)

        assert session.status is SessionStatus.COMPLETED
        assert session.end_reason is EndReason.TIME_EXPIRED
        assert session.remaining_seconds == 0
        assert session.result.score == 0
        assert session.result.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_accumulating_threshold(self, exam, settings, results):
        session = build_session(exam, settings, results, violation_threshold=3)
        await session.start()

        session.environment.report(EnvironmentEvent.BLUR)
        session.environment.report(EnvironmentEvent.FOCUS)
        session.environment.report(EnvironmentEvent.HIDDEN)
        assert session.status is SessionStatus.IN_PROGRESS

        session.report_signal(Signal(kind=ViolationKind.NO_FACE_OR_AWAY))

        assert session.status is SessionStatus.FAILED
        assert [v.kind for v in session.violations] == [
            ViolationKind.APP_BLUR, ViolationKind.TAB_SWITCH, ViolationKind.NO_FACE_OR_AWAY,
        ]


class TestTermination:
    @pytest.mark.asyncio
    async def test_first_terminal_trigger_wins(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()
        session.next_question()
        session.next_question()

        session.report_signal(Signal(kind=ViolationKind.TAB_SWITCH))

        assert session.submit() is False
        assert session.stop() is False
        assert session.status is SessionStatus.FAILED
        assert results.save_calls == 1

    @pytest.mark.asyncio
    async def test_violation_log_frozen_after_end(self, exam, settings, results):
        session = build_session(exam, settings, results, violation_threshold=5)
        await session.start()
        session.report_signal(Signal(kind=ViolationKind.OTHER))
        session.stop()

        assert session.report_signal(Signal(kind=ViolationKind.MULTIPLE_PEOPLE)) is None
        session.environment.report(EnvironmentEvent.HIDDEN)

        assert len(session.violations) == 1
        assert session.status is SessionStatus.COMPLETED
        assert session.set_answer("q1", "a") is False

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, exam, settings, results):
        factory = CameraFactory()
        session = build_session(exam, settings, results, factory)
        await session.start()
        session.set_answer("q1", "a")

        assert session.stop() is True
        first_state = (session.status, session.end_reason, session.score, session.ended_at)
        assert session.stop() is False

        assert (session.status, session.end_reason, session.score, session.ended_at) == first_state
        assert session.end_reason is EndReason.STOPPED
        assert session.score == 1
        assert results.save_calls == 1
        assert factory.created[0].release_count == 1

    def test_stop_before_start_is_a_no_op(self, exam, settings, results):
        session = build_session(exam, settings, results)

        assert session.stop() is False
        assert session.status is SessionStatus.NOT_STARTED
        assert results.save_calls == 0

    @pytest.mark.asyncio
    async def test_no_schedule_fires_after_end(self, exam, settings, results):
        settings = settings.model_copy(update={"countdown_tick_seconds": 0.005})
        strategy = ScriptedStrategy()
        session = build_session(exam, settings, results, strategy=strategy)
        await session.start()
        await wait_until(lambda: session.remaining_seconds < 600 and strategy.calls > 0)

        session.stop()
        remaining, calls = session.remaining_seconds, strategy.calls
        await asyncio.sleep(0.1)

        assert session.remaining_seconds == remaining
        assert strategy.calls == calls
        assert session.environment.listener_count() == 0
        assert session.sink.latest_frame() is None

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_terminal_state(self, exam, settings):
        results = CountingResultStore(fail=True)
        session = build_session(exam, settings, results)
        await session.start()

        session.report_signal(Signal(kind=ViolationKind.TAB_SWITCH))

        assert session.status is SessionStatus.FAILED
        assert session.result is None
        assert isinstance(session.persist_error, IOError)
        assert results.save_calls == 1


class TestResilience:
    @pytest.mark.asyncio
    async def test_detection_errors_do_not_stop_the_exam(self, exam, settings, results):
        settings = settings.model_copy(update={"countdown_tick_seconds": 0.01})
        strategy = ScriptedStrategy(error=RuntimeError("inference failed"))
        session = build_session(exam, settings, results, strategy=strategy)
        await session.start()

        await wait_until(lambda: strategy.calls >= 3 and session.remaining_seconds < 600)

        assert session.status is SessionStatus.IN_PROGRESS
        assert session.violations == []
        session.stop()

    @pytest.mark.asyncio
    async def test_lost_camera_is_a_violation(self, exam, settings, results):
        factory = CameraFactory({"fail_after": 5}, {"opened": False}, {"opened": False})
        session = build_session(exam, settings, results, factory)
        await session.start()

        await wait_until(lambda: session.status.is_terminal)

        assert session.status is SessionStatus.FAILED
        assert [v.kind for v in session.violations] == [ViolationKind.OTHER]
        assert "Camera feed lost" in session.violations[0].detail

    @pytest.mark.asyncio
    async def test_lost_camera_ends_exam_under_lenient_threshold(self, exam, settings, results):
        factory = CameraFactory({"fail_after": 5}, {"opened": False}, {"opened": False})
        session = build_session(exam, settings, results, factory, violation_threshold=2)
        await session.start()
        session.set_answer("q1", "a")

        await wait_until(lambda: session.status.is_terminal)

        assert session.status is SessionStatus.FAILED
        assert session.end_reason is EndReason.CAPTURE_LOST
        assert session.score == 0
        assert [v.kind for v in session.violations] == [ViolationKind.OTHER]
        assert session.capture.handle is None
        assert results.save_calls == 1

    @pytest.mark.asyncio
    async def test_subscribers_receive_violation_then_termination(self, exam, settings, results):
        session = build_session(exam, settings, results)
        await session.start()
        queue = session.subscribe()

        session.environment.report(EnvironmentEvent.HIDDEN)

        first, second = queue.get_nowait(), queue.get_nowait()
        assert first["type"] == "violation"
        assert first["kind"] == "tab_switch"
        assert second["type"] == "terminated"
        assert second["status"] == "failed"
        assert second["end_reason"] == "violation"


def test_score_answers(exam):
    assert score_answers(exam, {}) == 0
    assert score_answers(exam, {"q1": "a", "q2": "b", "q3": "a"}) == 2
    assert score_answers(exam, {"q1": "a", "q2": "a", "q3": "a", "extra": "a"}) == 3
