from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from typing import List, Optional
import asyncio
import logging
from datetime import datetime

import cv2

from examguard.config import Settings, configure_logging
from examguard.errors import (
    AuthenticationError,
    CaptureError,
    CaptureFailureReason,
    DetectorUnavailableError,
    DuplicateUsernameError,
    ExamAlreadyTakenError,
    ExamGuardError,
    ExamNotFoundError,
    InvalidAnswerError,
    SessionNotFoundError,
    SessionStateError,
)
from examguard.models.schemas import (
    AnswerRequest,
    EnvironmentRequest,
    Exam,
    ExamDraft,
    ExamResult,
    ExamUpdate,
    Identity,
    LoginRequest,
    NavigateRequest,
    QuestionView,
    RegisterRequest,
    ReportViolationRequest,
    SessionResponse,
    Signal,
    SignalSource,
    StartSessionRequest,
    ViolationEvent,
)
from examguard.monitoring.capture import CaptureSessionManager
from examguard.monitoring.focus_monitor import EnvironmentEvent
from examguard.session.exam_session import ExamSession
from examguard.session.registry import ProctoringService

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ExamNotFoundError: 404,
    SessionNotFoundError: 404,
    ExamAlreadyTakenError: 409,
    SessionStateError: 409,
    DuplicateUsernameError: 409,
    InvalidAnswerError: 422,
    AuthenticationError: 401,
    DetectorUnavailableError: 503,
}


def _error_status(error: ExamGuardError) -> int:
    if isinstance(error, CaptureError):
        return 403 if error.reason is CaptureFailureReason.PERMISSION_DENIED else 503
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def session_response(session: ExamSession, message: Optional[str] = None) -> SessionResponse:
    question = session.current_question
    return SessionResponse(
        session_id=session.id,
        exam_id=session.exam.id,
        student_id=session.student_id,
        status=session.status,
        remaining_seconds=session.remaining_seconds,
        current_question_index=session.current_question_index,
        total_questions=len(session.exam.questions),
        current_question=QuestionView(id=question.id, text=question.text, options=question.options),
        answers=session.answers,
        violations=session.violations,
        started_at=session.started_at,
        ended_at=session.ended_at,
        end_reason=session.end_reason,
        score=session.score,
        result_id=session.result.id if session.result else None,
        message=message,
    )


def create_app(settings: Optional[Settings] = None, service: Optional[ProctoringService] = None) -> FastAPI:
    settings = settings or Settings()
    service = service or ProctoringService(settings)

    app = FastAPI(title="ExamGuard Proctoring Service", version="1.0.0")
    app.state.service = service

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for development
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExamGuardError)
    async def engine_error_handler(request: Request, error: ExamGuardError):
        body = {"detail": str(error), "error": type(error).__name__}
        if isinstance(error, CaptureError):
            body["reason"] = error.reason.value
        return JSONResponse(status_code=_error_status(error), content=body)

    # ---- identities ----

    @app.post("/auth/register", response_model=Identity)
    async def register(request: RegisterRequest):
        return service.identities.create(request.username, request.password, request.role)

    @app.post("/auth/login", response_model=Identity)
    async def login(request: LoginRequest):
        identity = service.identities.find_by_credentials(request.username, request.password)
        if identity is None:
            raise AuthenticationError("Invalid username or password")
        return identity

    # ---- exam catalog ----

    @app.post("/exams", response_model=Exam)
    async def create_exam(draft: ExamDraft):
        return service.catalog.create(draft)

    @app.get("/exams", response_model=List[Exam])
    async def list_exams(teacher_id: Optional[str] = None):
        if teacher_id is not None:
            return service.catalog.list_by_owner(teacher_id)
        return service.catalog.list_all()

    @app.get("/exams/{exam_id}", response_model=Exam)
    async def get_exam(exam_id: str):
        exam = service.catalog.get_by_id(exam_id)
        if exam is None:
            raise ExamNotFoundError(f"Exam {exam_id} not found")
        return exam

    @app.patch("/exams/{exam_id}", response_model=Exam)
    async def update_exam(exam_id: str, updates: ExamUpdate):
        try:
            exam = service.catalog.update(exam_id, updates)
        except ValidationError as e:
            # the merged exam broke a draft rule
            raise RequestValidationError(e.errors(include_url=False, include_context=False))
        if exam is None:
            raise ExamNotFoundError(f"Exam {exam_id} not found")
        return exam

    @app.delete("/exams/{exam_id}")
    async def delete_exam(exam_id: str):
        if not service.catalog.delete(exam_id):
            raise ExamNotFoundError(f"Exam {exam_id} not found")
        return {"status": "deleted", "exam_id": exam_id}

    # ---- exam sessions ----

    @app.post("/sessions", response_model=SessionResponse)
    async def start_session(request: StartSessionRequest):
        """Check eligibility, acquire the camera and start the exam."""
        session = await service.start_session(request.exam_id, request.student_id)
        return session_response(session, "Exam started. Your webcam is now being monitored.")

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(session_id: str):
        return session_response(service.get_session(session_id))

    @app.post("/sessions/{session_id}/answers", response_model=SessionResponse)
    async def set_answer(session_id: str, request: AnswerRequest):
        session = service.get_session(session_id)
        if not session.set_answer(request.question_id, request.option_id):
            raise SessionStateError(f"Session is {session.status.value}; answer not recorded")
        return session_response(session)

    @app.post("/sessions/{session_id}/navigate", response_model=SessionResponse)
    async def navigate(session_id: str, request: NavigateRequest):
        session = service.get_session(session_id)
        if request.direction == "next":
            session.next_question()
        else:
            session.previous_question()
        return session_response(session)

    @app.post("/sessions/{session_id}/submit", response_model=SessionResponse)
    async def submit(session_id: str):
        session = service.get_session(session_id)
        submitted = session.submit()
        return session_response(session, None if submitted else "Session had already ended")

    @app.post("/sessions/{session_id}/stop", response_model=SessionResponse)
    async def stop(session_id: str):
        session = service.stop_session(session_id)
        return session_response(session, "Monitoring stopped")

    @app.post("/sessions/{session_id}/environment", response_model=SessionResponse)
    async def report_environment(session_id: str, request: EnvironmentRequest):
        """Visibility/focus transition reported by the exam client."""
        session = service.get_session(session_id)
        session.environment.report(EnvironmentEvent(request.event))
        return session_response(session)

    @app.post("/sessions/{session_id}/violations", response_model=SessionResponse)
    async def report_violation(session_id: str, request: ReportViolationRequest):
        session = service.get_session(session_id)
        session.report_signal(Signal(kind=request.kind, detail=request.detail, source=SignalSource.MANUAL))
        return session_response(session)

    @app.get("/sessions/{session_id}/violations")
    async def get_violations(session_id: str):
        session = service.get_session(session_id)
        violations: List[ViolationEvent] = session.violations
        return {
            "session_id": session_id,
            "total_violations": len(violations),
            "violations": [v.model_dump(mode="json") for v in violations],
            "status": session.status.value,
        }

    # ---- results ----

    @app.get("/results", response_model=List[ExamResult])
    async def list_results(student_id: Optional[str] = None, exam_id: Optional[str] = None):
        if student_id is not None:
            results = service.results.list_by_student(student_id)
            if exam_id is not None:
                results = [r for r in results if r.exam_id == exam_id]
            return results
        if exam_id is not None:
            return service.results.list_by_exam(exam_id)
        return service.results.list_all()

    @app.get("/results/{result_id}", response_model=ExamResult)
    async def get_result(result_id: str):
        result = service.results.get_by_id(result_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Result {result_id} not found")
        return result

    # ---- live feeds ----

    @app.websocket("/ws/{session_id}")
    async def websocket_endpoint(websocket: WebSocket, session_id: str):
        """WebSocket endpoint for real-time violation notifications."""
        session = service.sessions.get(session_id)
        await websocket.accept()
        if session is None:
            await websocket.send_json({"type": "error", "message": f"Session {session_id} not found"})
            await websocket.close()
            return

        queue = session.subscribe()
        logger.debug("WebSocket connected for session %s", session_id)
        try:
            await websocket.send_json({
                "type": "connected",
                "session_id": session_id,
                "status": session.status.value,
                "message": "Connected to exam monitoring",
            })
            if session.status.is_terminal:
                return
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=30.0)
                except asyncio.TimeoutError:
                    # Keep the connection alive
                    await websocket.send_json({"type": "ping", "timestamp": datetime.now().isoformat()})
                    continue
                await websocket.send_json(message)
                if message["type"] == "terminated":
                    break
        except WebSocketDisconnect:
            logger.debug("WebSocket disconnected for session %s", session_id)
        finally:
            session.unsubscribe(queue)
            try:
                await websocket.close()
            except RuntimeError:
                # already closed by the client
                pass

    async def frame_stream(session: ExamSession):
        """Generate multipart JPEG stream of the session's mirrored self-view."""
        boundary = b"--frame"
        while not session.status.is_terminal:
            frame = session.sink.latest_frame()
            if frame is None:
                await asyncio.sleep(0.05)
                continue

            success, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, 85])
            if not success:
                logger.error("Failed to encode frame for session %s", session.id)
                await asyncio.sleep(0.05)
                continue

            yield boundary + b"\r\nContent-Type: image/jpeg\r\n\r\n" + buffer.tobytes() + b"\r\n"
            await asyncio.sleep(1.0 / max(settings.frame_rate, 1))

    @app.get("/stream/{session_id}")
    async def stream_camera(session_id: str):
        """Stream live camera feed for an exam session."""
        session = service.get_session(session_id)
        return StreamingResponse(
            frame_stream(session),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.get("/cameras")
    async def list_cameras():
        """List available camera indices on this machine."""
        manager = CaptureSessionManager(settings, service.device_factory)
        availability = await asyncio.to_thread(manager.probe_devices)
        available = [idx for idx, ok in availability.items() if ok]
        return {"available_indices": available, "probed": list(availability.keys())}

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        active = [s for s in service.sessions.values() if not s.status.is_terminal]
        return {
            "status": "healthy",
            "active_sessions": len(active),
            "timestamp": datetime.now().isoformat(),
        }

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        service.shutdown()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = Settings()
    configure_logging(_settings)
    uvicorn.run(app, host=_settings.host, port=_settings.port)
