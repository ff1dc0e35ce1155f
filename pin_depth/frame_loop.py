"""
カメラ・推論・ピン更新のループ

Three independently paced loops:
- camera: grabs frames and hands them to the inference worker
- inference: at most one pass in flight, new frames are dropped meanwhile
- actuation: at display rate, maps the latest depth buffer onto the pins

Loops share state only through LatestSlot (overwrite on publish, no backlog).
"""

import logging
import threading
import time
import traceback
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

import numpy as np

from .actuation import PinBoard
from .height_field import DepthBuffer, HeightFieldMapper

logger = logging.getLogger("pin_depth.frame_loop")


class DepthProvider(Protocol):
    def get_latest_depth_buffer(self) -> Optional[DepthBuffer]:
        ...


class LatestSlot:
    """One-slot channel: publish replaces the value, readers see the newest."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = None
        self._sequence = 0
        self._timestamp = 0.0

    def publish(self, value) -> int:
        with self._lock:
            self._value = value
            self._sequence += 1
            self._timestamp = time.time()
            return self._sequence

    def latest(self):
        with self._lock:
            return self._value

    def snapshot(self):
        """(value, sequence, publish timestamp)"""
        with self._lock:
            return self._value, self._sequence, self._timestamp

    @property
    def sequence(self) -> int:
        with self._lock:
            return self._sequence


class DepthSlot(LatestSlot):
    """LatestSlot holding DepthBuffers; the DepthProvider of the pipeline."""

    def get_latest_depth_buffer(self) -> Optional[DepthBuffer]:
        return self.latest()


class InferenceWorker:
    """
    Runs depth inference with a drop-if-busy policy.

    A frame that arrives while a pass is in flight is counted in `dropped`
    and discarded; it is never queued.
    """

    def __init__(self, depth_processor, depth_slot: LatestSlot):
        self.depth_processor = depth_processor
        self.depth_slot = depth_slot
        self._in_flight = threading.Lock()
        self._executor = None
        self.completed = 0
        self.dropped = 0
        self.inference_times = deque(maxlen=1000)

    @property
    def in_flight(self) -> bool:
        return self._in_flight.locked()

    def try_run(self, frame) -> bool:
        """Run one inference pass in the calling thread unless one is already running."""
        if not self._in_flight.acquire(blocking=False):
            self.dropped += 1
            return False
        try:
            self._run(frame)
        finally:
            self._in_flight.release()
        return True

    def submit(self, frame) -> bool:
        """Start one inference pass in the background unless one is already running."""
        if not self._in_flight.acquire(blocking=False):
            self.dropped += 1
            return False
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        try:
            self._executor.submit(self._run_and_release, frame)
        except RuntimeError:
            self._in_flight.release()
            raise
        return True

    def _run_and_release(self, frame):
        try:
            self._run(frame)
        finally:
            self._in_flight.release()

    def _run(self, frame):
        start = time.perf_counter()
        try:
            depth_buffer, _ = self.depth_processor.predict(frame)
        except Exception as e:
            logger.error(f"[Inference] predict failed: {e}")
            logger.error(traceback.format_exc())
            return
        if depth_buffer is None:
            logger.warning("[Inference] predict returned None, nothing published.")
            return
        duration = time.perf_counter() - start
        self.inference_times.append(duration)
        sequence = self.depth_slot.publish(depth_buffer)
        self.completed += 1
        logger.debug(
            f"[Inference] #{sequence} {depth_buffer.width}x{depth_buffer.height} in {duration * 1000:.1f}ms"
        )

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


class ActuationLoop:
    """Maps the latest depth buffer onto the pin board once per tick."""

    def __init__(self, provider: DepthProvider, mapper: HeightFieldMapper, board: PinBoard):
        if len(board) != mapper.cell_count:
            raise ValueError(
                f"Pin board has {len(board)} pins but the mapper produces {mapper.cell_count} cells"
            )
        self.provider = provider
        self.mapper = mapper
        self.board = board
        self.heights_slot = LatestSlot()
        self.actuation_times = deque(maxlen=1000)
        self.skipped = 0

    def tick(self) -> Optional[np.ndarray]:
        """
        One actuation pass.

        Returns:
            The applied height grid, or None when no depth buffer exists yet.
        """
        depth_buffer, depth_sequence = self._read_provider()
        if depth_buffer is None:
            self.skipped += 1
            return None
        start = time.perf_counter()
        heights = self.mapper.map(depth_buffer)
        self.board.apply(heights)
        self.heights_slot.publish((heights, depth_buffer.width, depth_buffer.height, depth_sequence))
        self.actuation_times.append(time.perf_counter() - start)
        return heights

    def _read_provider(self):
        # LatestSlot providers hand out the buffer and its sequence in one read
        snapshot = getattr(self.provider, "snapshot", None)
        if callable(snapshot):
            depth_buffer, sequence, _ = snapshot()
            return depth_buffer, sequence
        return self.provider.get_latest_depth_buffer(), 0

    def latest_heights(self):
        """(heights, depth_width, depth_height, depth_sequence) of the last pass, or None."""
        return self.heights_slot.latest()


class PinPipeline:
    """
    Owns the slots, the inference worker and the loop threads.

    Args:
        camera: object with get_frame() -> frame or None
        depth_processor: object with predict(frame) -> (DepthBuffer, seconds)
        pins_config: the "pins" configuration section
        pipeline_config: the "pipeline" configuration section
    """

    def __init__(self, camera, depth_processor, pins_config: dict, pipeline_config: Optional[dict] = None):
        pipeline_config = pipeline_config or {}
        self.camera = camera
        self.depth_processor = depth_processor
        self.display_fps = float(pipeline_config.get("display_fps", 60))
        self.camera_interval = float(pipeline_config.get("camera_interval_s", 0.03))
        self.max_camera_errors = int(pipeline_config.get("max_camera_errors", 5))

        self.frame_slot = LatestSlot()
        self.depth_slot = DepthSlot()
        self.mapper = HeightFieldMapper(
            pins_config.get("grid_size", 120),
            fallback=pins_config.get("fallback_height", 0.0),
        )
        self.board = PinBoard(
            self.mapper.grid_size,
            spacing=pins_config.get("spacing", 0.4),
            pin_height=pins_config.get("pin_height", 5.0),
            mode=pins_config.get("actuation_mode", "offset"),
            height_scale=pins_config.get("height_scale", 5.0),
        )
        self.inference_worker = InferenceWorker(depth_processor, self.depth_slot)
        self.actuation_loop = ActuationLoop(self.depth_slot, self.mapper, self.board)

        self._stop_event = threading.Event()
        self._threads = []
        self._fps_stats = {"camera": deque(maxlen=30), "actuation": deque(maxlen=30)}
        self._last_frame_times = {"camera": 0.0, "actuation": 0.0}

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self):
        if self.running:
            logger.warning("Pipeline already running")
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._camera_capture_loop, name="camera", daemon=True),
            threading.Thread(target=self._actuation_loop, name="actuation", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info(f"Pipeline started: grid {self.mapper.grid_size}x{self.mapper.grid_size}, display {self.display_fps} FPS")

    def stop(self, timeout: float = 2.0):
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=timeout)
        # スレッドが終了しない場合は残しておき、start() で二重起動しないようにする
        self._threads = [t for t in self._threads if t.is_alive()]
        for t in self._threads:
            logger.warning(f"Thread '{t.name}' did not stop within {timeout}s")
        self.inference_worker.shutdown(wait=True)
        logger.info("Pipeline stopped")

    def _mark(self, name: str):
        now = time.time()
        last = self._last_frame_times[name]
        if last > 0 and now > last:
            self._fps_stats[name].append(1.0 / (now - last))
        self._last_frame_times[name] = now

    def _camera_capture_loop(self):
        consecutive_errors = 0
        while not self._stop_event.is_set():
            try:
                frame = self.camera.get_frame()
                if frame is not None:
                    self.frame_slot.publish(frame)
                    self._mark("camera")
                    self.inference_worker.submit(frame)
                    consecutive_errors = 0
                else:
                    consecutive_errors += 1
                    logger.warning(f"Camera read error ({consecutive_errors}/{self.max_camera_errors})")
                    if consecutive_errors >= self.max_camera_errors:
                        logger.error("Too many consecutive camera errors, backing off")
                        self._stop_event.wait(1.0)
                        consecutive_errors = 0
            except Exception as e:
                logger.error(f"Camera loop error: {e}")
                logger.error(traceback.format_exc())
                self._stop_event.wait(0.5)
            self._stop_event.wait(self.camera_interval)

    def _actuation_loop(self):
        interval = 1.0 / self.display_fps if self.display_fps > 0 else 0.0
        while not self._stop_event.is_set():
            started = time.perf_counter()
            try:
                if self.actuation_loop.tick() is not None:
                    self._mark("actuation")
            except Exception as e:
                logger.error(f"Actuation loop error: {e}")
                logger.error(traceback.format_exc())
            remaining = interval - (time.perf_counter() - started)
            if remaining > 0:
                self._stop_event.wait(remaining)

    def stats(self) -> dict:
        """FPS / latency / drop statistics (medians for FPS, means for latency)."""
        def median(values):
            if not values:
                return 0
            return float(np.median(list(values)))

        def mean_ms(values):
            return round(float(np.mean(list(values))) * 1000, 1) if values else 0

        _, depth_sequence, depth_timestamp = self.depth_slot.snapshot()
        depth_age = (time.time() - depth_timestamp) * 1000 if depth_timestamp > 0 else 0
        return {
            "fps": {
                "camera": round(median(self._fps_stats["camera"]), 1),
                "actuation": round(median(self._fps_stats["actuation"]), 1),
            },
            "latency": {
                "inference": mean_ms(self.inference_worker.inference_times),
                "actuation": mean_ms(self.actuation_loop.actuation_times),
                "depth_age": round(depth_age, 1),
            },
            "inference": {
                "completed": self.inference_worker.completed,
                "dropped": self.inference_worker.dropped,
                "depth_sequence": depth_sequence,
            },
            "actuation": {"skipped": self.actuation_loop.skipped},
        }
