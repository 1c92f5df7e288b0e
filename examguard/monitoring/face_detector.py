import cv2
import numpy as np
from typing import List

from examguard.errors import DetectorUnavailableError


class FaceDetector:
    def __init__(self, min_detection_confidence: float = 0.5):
        try:
            import mediapipe as mp
        except ImportError as e:
            raise DetectorUnavailableError("mediapipe is not installed") from e

        self.mp_face_detection = mp.solutions.face_detection
        self.face_detection = self.mp_face_detection.FaceDetection(
            model_selection=0, min_detection_confidence=min_detection_confidence
        )

    def detect_faces(self, frame: np.ndarray) -> List[dict]:
        """
        Detect every face in frame.
        Returns: list of face boxes in pixel coordinates
        """
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = self.face_detection.process(rgb_frame)

        if not results.detections:
            return []

        h, w = frame.shape[:2]
        faces = []
        for detection in results.detections:
            bbox = detection.location_data.relative_bounding_box
            faces.append({
                "x": int(bbox.xmin * w),
                "y": int(bbox.ymin * h),
                "width": int(bbox.width * w),
                "height": int(bbox.height * h),
                "confidence": detection.score[0],
            })
        return faces

    def count_faces(self, frame: np.ndarray) -> int:
        return len(self.detect_faces(frame))

    def release(self):
        """Release resources."""
        self.face_detection.close()
