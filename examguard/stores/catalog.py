import uuid
from datetime import datetime
from typing import Dict, List, Optional

from examguard.models.schemas import Exam, ExamDraft, ExamUpdate


class ExamCatalogStore:
    """In-memory exam catalog. Drafts are validated by the caller."""

    def __init__(self):
        self._exams: Dict[str, Exam] = {}

    def create(self, draft: ExamDraft) -> Exam:
        exam = Exam(**draft.model_dump(), id=uuid.uuid4().hex, created_at=datetime.now())
        self._exams[exam.id] = exam
        return exam

    def get_by_id(self, exam_id: str) -> Optional[Exam]:
        return self._exams.get(exam_id)

    def list_all(self) -> List[Exam]:
        return list(self._exams.values())

    def list_by_owner(self, teacher_id: str) -> List[Exam]:
        return [exam for exam in self._exams.values() if exam.teacher_id == teacher_id]

    def update(self, exam_id: str, updates: ExamUpdate) -> Optional[Exam]:
        exam = self._exams.get(exam_id)
        if exam is None:
            return None
        merged = {**exam.model_dump(), **updates.model_dump(exclude_none=True)}
        updated = Exam(**merged)
        self._exams[exam_id] = updated
        return updated

    def delete(self, exam_id: str) -> bool:
        return self._exams.pop(exam_id, None) is not None
