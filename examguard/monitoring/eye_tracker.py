import math
import cv2
import numpy as np
from typing import Optional, Tuple

from examguard.errors import DetectorUnavailableError

Point = Tuple[float, float]


def estimate_head_rotation(left_eye: Point, right_eye: Point) -> float:
    """
    Head roll in degrees from the line joining the two eye centers.
    0 means the eyes are level; the sign follows image coordinates.
    """
    dx = right_eye[0] - left_eye[0]
    dy = right_eye[1] - left_eye[1]
    angle = math.degrees(math.atan2(dy, dx))
    # Mirrored or swapped landmarks give angles near +/-180; fold them back.
    if angle > 90:
        angle -= 180
    elif angle < -90:
        angle += 180
    return angle


class EyeTracker:
    # Eye landmarks indices (left and right eye) in MediaPipe FaceMesh
    LEFT_EYE_INDICES = [33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246]
    RIGHT_EYE_INDICES = [362, 382, 381, 380, 374, 373, 390, 249, 263, 466, 388, 387, 386, 385, 384, 398]

    def __init__(self, min_detection_confidence: float = 0.5):
        try:
            import mediapipe as mp
        except ImportError as e:
            raise DetectorUnavailableError("mediapipe is not installed") from e

        self.mp_face_mesh = mp.solutions.face_mesh
        self.face_mesh = self.mp_face_mesh.FaceMesh(
            max_num_faces=1,
            refine_landmarks=True,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=0.5,
        )

    def eye_centers(self, frame: np.ndarray) -> Optional[Tuple[Point, Point]]:
        """Pixel centers of the left and right eye, or None when no face mesh is found."""
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = self.face_mesh.process(rgb_frame)

        if not results.multi_face_landmarks:
            return None

        landmarks = results.multi_face_landmarks[0].landmark
        h, w = frame.shape[:2]
        left = np.array([(landmarks[i].x * w, landmarks[i].y * h) for i in self.LEFT_EYE_INDICES])
        right = np.array([(landmarks[i].x * w, landmarks[i].y * h) for i in self.RIGHT_EYE_INDICES])
        left_center = left.mean(axis=0)
        right_center = right.mean(axis=0)
        return (float(left_center[0]), float(left_center[1])), (float(right_center[0]), float(right_center[1]))

    def head_rotation(self, frame: np.ndarray) -> Optional[float]:
        centers = self.eye_centers(frame)
        if centers is None:
            return None
        return estimate_head_rotation(*centers)

    def release(self):
        """Release resources."""
        self.face_mesh.close()
