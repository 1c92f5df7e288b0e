import uuid
from typing import Dict, List, Optional

from examguard.models.schemas import ExamResult, ExamResultDraft


class ResultStore:
    """In-memory exam results. One result per student and exam is expected."""

    def __init__(self):
        self._results: Dict[str, ExamResult] = {}

    def has_taken(self, student_id: str, exam_id: str) -> bool:
        return any(
            result.student_id == student_id and result.exam_id == exam_id
            for result in self._results.values()
        )

    def save(self, draft: ExamResultDraft) -> ExamResult:
        result = ExamResult(**draft.model_dump(), id=uuid.uuid4().hex)
        self._results[result.id] = result
        return result

    def get_by_id(self, result_id: str) -> Optional[ExamResult]:
        return self._results.get(result_id)

    def list_by_student(self, student_id: str) -> List[ExamResult]:
        return [r for r in self._results.values() if r.student_id == student_id]

    def list_by_exam(self, exam_id: str) -> List[ExamResult]:
        return [r for r in self._results.values() if r.exam_id == exam_id]

    def list_all(self) -> List[ExamResult]:
        return list(self._results.values())
