import asyncio
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from examguard.config import Settings
from examguard.errors import CaptureError, CaptureFailureReason
from examguard.models.schemas import CaptureConstraints, FALLBACK_CONSTRAINTS

logger = logging.getLogger(__name__)

# Consecutive failed reads before the sink is marked paused.
STALL_READ_LIMIT = 10

DeviceFactory = Callable[[int], "cv2.VideoCapture"]


def video_device_path(index: int) -> str:
    return f"/dev/video{index}"


def device_access_denied(index: int) -> bool:
    """
    cv2.VideoCapture never raises on a denied camera; it just stays closed.
    Only V4L2 exposes the reason: the device node exists but this process
    may not open it. Elsewhere a denial is reported as device_unavailable.
    """
    path = video_device_path(index)
    return os.path.exists(path) and not os.access(path, os.R_OK | os.W_OK)


class SinkState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"


class FrameSink:
    """
    Latest-frame buffer fed by a capture handle.
    The self-view stream and the signal detector both read from it.
    """

    def __init__(self, mirror: bool = True):
        self.mirror = mirror
        self.state = SinkState.IDLE
        self.width = 0
        self.height = 0
        self.frame_count = 0
        self.last_frame_time: Optional[float] = None
        self._latest_frame: Optional[np.ndarray] = None
        self.frame_lock = threading.Lock()

    def attach(self):
        self.state = SinkState.IDLE

    def push(self, frame: np.ndarray):
        """Store a new frame, mirrored horizontally for natural self-view."""
        if self.state is SinkState.ENDED or frame is None or frame.size == 0:
            return
        if self.mirror:
            frame = cv2.flip(frame, 1)
        height, width = frame.shape[:2]
        with self.frame_lock:
            self._latest_frame = frame
        self.width = width
        self.height = height
        self.frame_count += 1
        self.last_frame_time = time.monotonic()
        self.state = SinkState.PLAYING

    def pause(self):
        if self.state is SinkState.PLAYING:
            self.state = SinkState.PAUSED

    def end(self):
        self.state = SinkState.ENDED

    def detach(self):
        self.state = SinkState.ENDED
        self.width = 0
        self.height = 0
        with self.frame_lock:
            self._latest_frame = None

    def is_producing(self) -> bool:
        return self.state is SinkState.PLAYING and self.width > 0 and self.height > 0

    def frame_age(self) -> Optional[float]:
        if self.last_frame_time is None:
            return None
        return time.monotonic() - self.last_frame_time

    def latest_frame(self) -> Optional[np.ndarray]:
        """Return a copy of the latest frame."""
        with self.frame_lock:
            if self._latest_frame is None:
                return None
            return self._latest_frame.copy()


class CaptureHandle:
    """Ownership of one open capture device and its sink binding."""

    def __init__(self, device, constraints: CaptureConstraints):
        self.id = uuid.uuid4().hex[:8]
        self.device = device
        self.constraints = constraints
        self.sink: Optional[FrameSink] = None
        self.released = False
        self.recovery_attempts = 0
        self.on_lost: Optional[Callable[[CaptureError], None]] = None
        # Serialises device reads (worker thread) against release (event loop).
        self.device_lock = threading.Lock()
        self.pump_task: Optional[asyncio.Task] = None
        self.health_task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class CaptureHealth:
    healthy: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "CaptureHealth":
        return cls(True)

    @classmethod
    def degraded(cls, reason: str) -> "CaptureHealth":
        return cls(False, reason)


class CaptureSessionManager:
    """
    Owns the lifecycle of a session's capture device: acquire with fallback,
    bind to a sink, watch health with bounded in-place recovery, release.
    At most one live handle exists per manager.
    """

    def __init__(self, settings: Settings, device_factory: Optional[DeviceFactory] = None):
        self.settings = settings
        self.camera_index = settings.camera_index
        self.frame_interval = 1.0 / max(settings.frame_rate, 1)
        self._device_factory = device_factory or cv2.VideoCapture
        self._handle: Optional[CaptureHandle] = None

    @property
    def handle(self) -> Optional[CaptureHandle]:
        return self._handle

    def preferred_constraints(self) -> CaptureConstraints:
        return CaptureConstraints(
            width=self.settings.preferred_width,
            height=self.settings.preferred_height,
        )

    async def acquire(self, preferred: Optional[CaptureConstraints] = None) -> CaptureHandle:
        """
        Open the front camera at the preferred resolution, falling back once
        to unconstrained video-only capture.

        Raises:
            CaptureError: permission denied or no usable device
        """
        self.release(self._handle)
        device, constraints = await self._open_with_fallback(preferred or self.preferred_constraints())
        handle = CaptureHandle(device, constraints)
        self._handle = handle
        logger.info(
            "Capture handle %s acquired on camera %d (%sx%s)",
            handle.id, self.camera_index, constraints.width or "auto", constraints.height or "auto",
        )
        return handle

    async def _open_with_fallback(
        self, preferred: CaptureConstraints
    ) -> Tuple["cv2.VideoCapture", CaptureConstraints]:
        try:
            device = await asyncio.to_thread(self._open_device, preferred)
            return device, preferred
        except CaptureError as first_error:
            logger.warning("Preferred capture failed (%s); retrying unconstrained", first_error)
            try:
                device = await asyncio.to_thread(self._open_device, FALLBACK_CONSTRAINTS)
            except CaptureError as fallback_error:
                logger.error("Fallback capture failed: %s", fallback_error)
                if first_error.reason is CaptureFailureReason.PERMISSION_DENIED:
                    raise first_error from fallback_error
                raise
            return device, FALLBACK_CONSTRAINTS

    def _open_device(self, constraints: CaptureConstraints):
        try:
            device = self._device_factory(self.camera_index)
        except PermissionError as e:
            raise CaptureError(CaptureFailureReason.PERMISSION_DENIED, f"Camera access denied: {e}") from e
        except (OSError, cv2.error) as e:
            raise CaptureError(CaptureFailureReason.DEVICE_UNAVAILABLE, f"Camera error: {e}") from e

        if not device.isOpened():
            device.release()
            if device_access_denied(self.camera_index):
                raise CaptureError(
                    CaptureFailureReason.PERMISSION_DENIED,
                    f"No permission to open {video_device_path(self.camera_index)}",
                )
            raise CaptureError(
                CaptureFailureReason.DEVICE_UNAVAILABLE,
                f"Could not open camera at index {self.camera_index}",
            )

        self._apply_constraints(device, constraints)

        # A device that opens but cannot deliver at these settings counts as a failed attempt.
        ok, frame = device.read()
        if not ok or frame is None or frame.size == 0:
            device.release()
            raise CaptureError(
                CaptureFailureReason.DEVICE_UNAVAILABLE,
                f"Camera {self.camera_index} delivered no frame at {constraints.width}x{constraints.height}",
            )
        return device

    def _apply_constraints(self, device, constraints: CaptureConstraints):
        if constraints.width:
            device.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        if constraints.height:
            device.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        device.set(cv2.CAP_PROP_FPS, self.settings.frame_rate)

    async def bind_sink(self, handle: CaptureHandle, sink: FrameSink):
        """
        Attach the capture stream to a sink and wait until the sink is playing
        with non-zero frame dimensions.

        Raises:
            CaptureError: the sink never started producing frames
        """
        if handle.released:
            raise CaptureError(CaptureFailureReason.DEVICE_UNAVAILABLE, "Capture handle already released")
        handle.sink = sink
        sink.attach()
        self._start_pump(handle)

        try:
            await asyncio.wait_for(self._wait_producing(sink), timeout=self.settings.bind_timeout_seconds)
        except asyncio.TimeoutError:
            raise CaptureError(
                CaptureFailureReason.STREAM_STALLED,
                f"No frames within {self.settings.bind_timeout_seconds:.1f}s of binding",
            ) from None
        logger.info("Capture handle %s bound to sink (%dx%d)", handle.id, sink.width, sink.height)

    async def _wait_producing(self, sink: FrameSink):
        while not sink.is_producing():
            await asyncio.sleep(self.frame_interval)

    def _start_pump(self, handle: CaptureHandle):
        self._cancel(handle.pump_task)
        handle.pump_task = asyncio.create_task(self._pump_frames(handle))

    async def _pump_frames(self, handle: CaptureHandle):
        failed_reads = 0
        while not handle.released:
            sink = handle.sink
            device = handle.device
            if sink is None or device is None:
                return
            if not device.isOpened():
                logger.warning("Capture device for handle %s stopped", handle.id)
                sink.end()
                return

            ok, frame = await asyncio.to_thread(self._read_frame, handle)
            if handle.released:
                return

            if not ok or frame is None or frame.size == 0:
                failed_reads += 1
                if failed_reads == STALL_READ_LIMIT:
                    logger.warning("Frame delivery stalled on handle %s", handle.id)
                    sink.pause()
            else:
                failed_reads = 0
                sink.push(frame)

            await asyncio.sleep(self.frame_interval)

    def _read_frame(self, handle: CaptureHandle):
        with handle.device_lock:
            if handle.released or handle.device is None:
                return False, None
            return handle.device.read()

    def health_check(self, handle: Optional[CaptureHandle]) -> CaptureHealth:
        """Check that the bound sink is playing and receiving fresh, non-empty frames."""
        if handle is None or handle.released:
            return CaptureHealth.degraded("capture released")
        sink = handle.sink
        if sink is None:
            return CaptureHealth.degraded("no sink bound")
        if sink.state is not SinkState.PLAYING:
            return CaptureHealth.degraded(f"sink {sink.state.value}")
        if sink.width == 0 or sink.height == 0:
            return CaptureHealth.degraded("zero-dimension frames")
        age = sink.frame_age()
        if age is None or age > self.settings.stall_timeout_seconds:
            return CaptureHealth.degraded("no recent frames")
        return CaptureHealth.ok()

    def watch(self, handle: CaptureHandle, on_lost: Optional[Callable[[CaptureError], None]] = None):
        """Start periodic health checks; on_lost is called if recovery is exhausted."""
        handle.on_lost = on_lost
        self._cancel(handle.health_task)
        handle.health_task = asyncio.create_task(self._health_loop(handle))

    async def _health_loop(self, handle: CaptureHandle):
        while not handle.released:
            await asyncio.sleep(self.settings.health_check_interval_seconds)
            if handle.released:
                return
            health = self.health_check(handle)
            if health.healthy:
                if handle.recovery_attempts:
                    logger.info("Capture handle %s healthy again", handle.id)
                    handle.recovery_attempts = 0
                continue
            await self._recover(handle, health.reason)

    async def _recover(self, handle: CaptureHandle, reason: str):
        handle.recovery_attempts += 1
        if handle.recovery_attempts > self.settings.max_recovery_attempts:
            logger.warning(
                "Capture handle %s still degraded (%s) after %d recovery attempts; re-acquiring",
                handle.id, reason, self.settings.max_recovery_attempts,
            )
            await self._reacquire(handle)
            return

        logger.warning(
            "Capture handle %s degraded (%s); recovery attempt %d/%d",
            handle.id, reason, handle.recovery_attempts, self.settings.max_recovery_attempts,
        )
        if handle.device is not None and not handle.device.isOpened():
            reopened = await asyncio.to_thread(self._reopen_device, handle)
            if handle.released or not reopened:
                return
        handle.sink.attach()
        self._start_pump(handle)

    def _reopen_device(self, handle: CaptureHandle) -> bool:
        with handle.device_lock:
            if handle.released or handle.device is None:
                return False
            if not handle.device.open(self.camera_index):
                return False
            self._apply_constraints(handle.device, handle.constraints)
            return True

    async def _reacquire(self, handle: CaptureHandle):
        self._cancel(handle.pump_task)
        self._close_device(handle)
        try:
            device, constraints = await self._open_with_fallback(self.preferred_constraints())
        except CaptureError as e:
            logger.error("Capture re-acquisition for handle %s failed: %s", handle.id, e)
            on_lost = handle.on_lost
            self.release(handle)
            if on_lost is not None:
                on_lost(e)
            return

        if handle.released:
            device.release()
            return
        with handle.device_lock:
            handle.device = device
        handle.constraints = constraints
        handle.recovery_attempts = 0
        handle.sink.attach()
        self._start_pump(handle)
        logger.info("Capture handle %s re-acquired", handle.id)

    def _close_device(self, handle: CaptureHandle):
        with handle.device_lock:
            device, handle.device = handle.device, None
            if device is None:
                return
            try:
                device.release()
            except cv2.error as e:
                logger.warning("Error releasing camera: %s", e)

    def release(self, handle: Optional[CaptureHandle]):
        """Stop the device and detach the sink. Safe on None or released handles."""
        if handle is None or handle.released:
            return
        handle.released = True
        self._cancel(handle.pump_task)
        self._cancel(handle.health_task)
        self._close_device(handle)
        if handle.sink is not None:
            handle.sink.detach()
            handle.sink = None
        if self._handle is handle:
            self._handle = None
        logger.info("Capture handle %s released", handle.id)

    def probe_devices(self, max_index: int = 5) -> Dict[int, bool]:
        """Probe camera indices and return availability map."""
        availability: Dict[int, bool] = {}
        for idx in range(max_index + 1):
            try:
                device = self._device_factory(idx)
            except (OSError, cv2.error):
                availability[idx] = False
                continue
            availability[idx] = device.isOpened()
            device.release()
        return availability

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]):
        if task is not None and not task.done():
            task.cancel()
