import logging
from typing import Callable, Dict, Optional

from examguard.config import Settings
from examguard.errors import (
    ExamAlreadyTakenError,
    ExamGuardError,
    ExamNotFoundError,
    SessionNotFoundError,
)
from examguard.monitoring.capture import CaptureSessionManager, DeviceFactory
from examguard.monitoring.detection import DetectionStrategy, build_strategy
from examguard.session.exam_session import ExamSession
from examguard.stores.catalog import ExamCatalogStore
from examguard.stores.identity import IdentityStore
from examguard.stores.results import ResultStore

logger = logging.getLogger(__name__)


class ProctoringService:
    """
    Owns the record stores and every live exam session.
    One instance is built per application; nothing here is module-global.
    """

    def __init__(
        self,
        settings: Settings,
        identities: Optional[IdentityStore] = None,
        catalog: Optional[ExamCatalogStore] = None,
        results: Optional[ResultStore] = None,
        device_factory: Optional[DeviceFactory] = None,
        strategy_factory: Callable[[Settings], DetectionStrategy] = build_strategy,
    ):
        self.settings = settings
        self.identities = identities or IdentityStore()
        self.catalog = catalog or ExamCatalogStore()
        self.results = results or ResultStore()
        self.device_factory = device_factory
        self.strategy_factory = strategy_factory
        self.sessions: Dict[str, ExamSession] = {}

    def create_session(self, exam_id: str, student_id: str) -> ExamSession:
        """Check eligibility and build a not-yet-started session. Allocates no capture resources."""
        exam = self.catalog.get_by_id(exam_id)
        if exam is None:
            raise ExamNotFoundError(f"Exam {exam_id} not found")
        if self.results.has_taken(student_id, exam_id):
            raise ExamAlreadyTakenError(f"Student {student_id} has already taken exam {exam_id}")
        for session in self.sessions.values():
            if (
                session.student_id == student_id
                and session.exam.id == exam_id
                and not session.status.is_terminal
            ):
                raise ExamAlreadyTakenError(f"Student {student_id} already has a session for exam {exam_id}")

        session = ExamSession(
            exam,
            student_id,
            settings=self.settings,
            result_store=self.results,
            capture=CaptureSessionManager(self.settings, self.device_factory),
            strategy=self.strategy_factory(self.settings),
        )
        self._evict_finished()
        self.sessions[session.id] = session
        return session

    def _evict_finished(self):
        """Forget the oldest finished sessions beyond the retention limit. Their results stay in the store."""
        finished = [sid for sid, session in self.sessions.items() if session.status.is_terminal]
        excess = len(finished) - self.settings.finished_session_retention
        for session_id in finished[:max(excess, 0)]:
            del self.sessions[session_id]
        if excess > 0:
            logger.debug("Evicted %d finished session(s)", excess)

    async def start_session(self, exam_id: str, student_id: str) -> ExamSession:
        session = self.create_session(exam_id, student_id)
        try:
            await session.start()
        except ExamGuardError:
            self.sessions.pop(session.id, None)
            raise
        return session

    def get_session(self, session_id: str) -> ExamSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def stop_session(self, session_id: str) -> ExamSession:
        session = self.get_session(session_id)
        session.stop()
        return session

    def shutdown(self):
        for session in list(self.sessions.values()):
            session.stop()
        logger.info("Stopped %d session(s)", len(self.sessions))
        self.sessions.clear()
