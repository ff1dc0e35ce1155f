import cv2
import numpy as np
import time
import logging
import traceback
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel

from utils import load_config, setup_logger
from pin_depth import PinPipeline, initialize_depth_model
from pin_depth.depth_model import DEFAULT_INPUT_SIZE
from pin_depth.visualization import (
    create_default_depth_image,
    create_depth_visualization,
    create_height_grid_visualization,
)

# --- Logger Setup ---
logger = logging.getLogger("pin_server")
logger.setLevel(logging.INFO)
if not logger.hasHandlers():
    stream_handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

# --- Configuration ---
CONFIG_PATH = "config_pins.json"
STREAM_SIZE = (320, 240)
MJPEG_BOUNDARY = b'--frame\r\nContent-Type: image/jpeg\r\n\r\n'


# --- Pydantic Models for API ---
class HeightFieldResponse(BaseModel):
    timestamp: float
    grid_size: int
    depth_width: int
    depth_height: int
    depth_sequence: int
    heights: List[float]
    error_message: Optional[str] = None


class PinsResponse(BaseModel):
    timestamp: float
    grid_size: int
    actuation_mode: str
    x: List[float]
    y: List[float]
    z: List[float]
    scale_y: List[float]
    error_message: Optional[str] = None


class InputSizeRequest(BaseModel):
    size: int


class InputSizeResponse(BaseModel):
    requested: int
    applied: int


# --- Modules ---
class CamInput:
    def __init__(self, camera_config: dict):
        self.config = camera_config
        self.device_id = self.config.get("device_id", 0)
        self.width = self.config.get("width", 720)
        self.height = self.config.get("height", 720)
        self.fps = self.config.get("fps", 30)

        logger.info(f"Attempting to initialize camera ID: {self.device_id} with {self.width}x{self.height} @ {self.fps} FPS")
        self.cap = cv2.VideoCapture(self.device_id)

        if not self.cap.isOpened():
            logger.error(f"Failed to open camera device ID: {self.device_id}")
            raise IOError(f"Cannot open camera {self.device_id}")

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        actual_width = self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)
        actual_height = self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)
        actual_fps = self.cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"Camera initialized. Requested: {self.width}x{self.height} @ {self.fps}FPS. Actual: {actual_width}x{actual_height} @ {actual_fps}FPS.")

    def get_frame(self) -> Optional[np.ndarray]:
        ret, frame = self.cap.read()
        if not ret:
            logger.warning("Failed to grab frame from camera.")
            return None
        return frame

    def release(self):
        if self.cap and self.cap.isOpened():
            self.cap.release()
            logger.info("Camera released.")


# --- FastAPI lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    app.state.config = None
    app.state.depth_processor = None
    app.state.camera = None
    app.state.pipeline = None

    try:
        logger.info("Pin server starting up...")
        config = load_config(CONFIG_PATH)
        app.state.config = config

        logging_cfg = config.get("logging", {})
        log_level_str = str(logging_cfg.get("level", "INFO")).upper()
        setup_logger("pin_depth", log_level_str, logging_cfg.get("file"))
        logger.setLevel(getattr(logging, log_level_str, logging.INFO))
        logger.info(f"Logger level set to {log_level_str}")

        depth_processor = initialize_depth_model(config)
        app.state.depth_processor = depth_processor
        if not depth_processor.is_available():
            logger.warning("Depth model not available. Pins will follow synthetic depth.")

        try:
            app.state.camera = CamInput(config.get("camera", {}))
        except IOError as e:
            logger.error(f"Failed to initialize camera: {e}. Pipeline will not start.")

        if app.state.camera is not None:
            pipeline = PinPipeline(
                app.state.camera, depth_processor,
                config.get("pins", {}), config.get("pipeline", {}),
            )
            app.state.pipeline = pipeline
            if config.get("pipeline", {}).get("autostart", True):
                pipeline.start()
    except Exception as e:
        logger.critical(f"Critical error during startup: {e}", exc_info=True)
        raise

    yield

    logger.info("Pin server shutting down...")
    if app.state.pipeline is not None:
        app.state.pipeline.stop()
    if app.state.camera is not None:
        app.state.camera.release()
    logger.info("Shutdown complete.")


app = FastAPI(title="Depth Pin-Art Server", lifespan=lifespan)


def _jpeg_quality(app_: FastAPI) -> int:
    config = getattr(app_.state, "config", None) or {}
    return int(config.get("server", {}).get("jpeg_quality", 70))


def _encode_frame(image, quality: int) -> Optional[bytes]:
    ret, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ret:
        return None
    return MJPEG_BOUNDARY + buffer.tobytes() + b'\r\n'


# --- Streams ---
def get_camera_stream(pipeline: PinPipeline, quality: int):
    """カメラ映像のストリーム"""
    fallback = _encode_frame(create_default_depth_image(*STREAM_SIZE, text="Waiting for camera..."), quality)
    last_sequence = -1
    while True:
        frame, sequence, _ = pipeline.frame_slot.snapshot()
        if frame is None or sequence == last_sequence:
            if frame is None and fallback is not None:
                yield fallback
            time.sleep(0.05)
            continue
        last_sequence = sequence
        chunk = _encode_frame(cv2.resize(frame, STREAM_SIZE), quality)
        if chunk is not None:
            yield chunk
        time.sleep(0.015)


def get_depth_stream(pipeline: PinPipeline, quality: int):
    """深度マップ（サンプリング位置付き）のストリーム"""
    last_sequence = -1
    while True:
        depth_buffer, sequence, _ = pipeline.depth_slot.snapshot()
        if depth_buffer is None or sequence == last_sequence:
            time.sleep(0.02)
            continue
        last_sequence = sequence
        try:
            vis = create_depth_visualization(depth_buffer, output_size=STREAM_SIZE,
                                             grid_size=pipeline.mapper.grid_size)
        except Exception as e:
            logger.error(f"[DepthStream] Error: {e}")
            vis = create_default_depth_image(*STREAM_SIZE, text="Depth error")
        chunk = _encode_frame(vis, quality)
        if chunk is not None:
            yield chunk
        time.sleep(0.015)


def get_height_grid_stream(pipeline: PinPipeline, quality: int):
    """ピン高さグリッドのストリーム"""
    while True:
        latest = pipeline.actuation_loop.latest_heights()
        if latest is None:
            time.sleep(0.05)
            continue
        heights = latest[0]
        grid_img = create_height_grid_visualization(heights, cell_size=4)
        grid_img = cv2.resize(grid_img, STREAM_SIZE, interpolation=cv2.INTER_NEAREST)
        chunk = _encode_frame(grid_img, quality)
        if chunk is not None:
            yield chunk
        time.sleep(0.03)


def _require_pipeline(request: Request) -> PinPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="System not initialized")
    return pipeline


# --- Endpoints ---
@app.get("/heights", response_model=HeightFieldResponse)
async def get_heights(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        logger.error("Pipeline not initialized. Cannot serve heights.")
        return HeightFieldResponse(
            timestamp=time.time(), grid_size=0, depth_width=0, depth_height=0,
            depth_sequence=0, heights=[], error_message="System not initialized"
        )

    grid_size = pipeline.mapper.grid_size
    latest = pipeline.actuation_loop.latest_heights()
    if latest is None:
        return HeightFieldResponse(
            timestamp=time.time(), grid_size=grid_size, depth_width=0, depth_height=0,
            depth_sequence=pipeline.depth_slot.sequence, heights=[],
            error_message="No depth data yet"
        )

    heights, depth_width, depth_height, depth_sequence = latest
    return HeightFieldResponse(
        timestamp=time.time(),
        grid_size=grid_size,
        depth_width=depth_width,
        depth_height=depth_height,
        depth_sequence=depth_sequence,
        heights=np.asarray(heights, dtype=np.float64).reshape(-1).tolist(),
    )


@app.get("/pins", response_model=PinsResponse)
async def get_pins(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        return PinsResponse(
            timestamp=time.time(), grid_size=0, actuation_mode="", x=[], y=[], z=[], scale_y=[],
            error_message="System not initialized"
        )
    snapshot = pipeline.board.snapshot()
    return PinsResponse(
        timestamp=time.time(),
        grid_size=pipeline.board.grid_size,
        actuation_mode=pipeline.board.mode,
        **snapshot,
    )


@app.get("/stats")
async def get_stats(request: Request):
    """統計情報を取得するAPIエンドポイント"""
    pipeline = _require_pipeline(request)
    stats = pipeline.stats()
    stats["input_size"] = pipeline.depth_processor.input_size
    stats["model_available"] = bool(pipeline.depth_processor.is_available())
    return stats


@app.post("/input_size", response_model=InputSizeResponse)
async def set_input_size(body: InputSizeRequest, request: Request):
    """モデル入力解像度の変更（ピングリッドはそのまま）"""
    pipeline = _require_pipeline(request)
    if body.size <= 0:
        raise HTTPException(status_code=422, detail="size must be positive")
    applied = pipeline.depth_processor.set_input_size(body.size)
    return InputSizeResponse(requested=body.size, applied=applied)


@app.get("/video")
async def video(request: Request):
    pipeline = _require_pipeline(request)
    return StreamingResponse(get_camera_stream(pipeline, _jpeg_quality(request.app)),
                             media_type="multipart/x-mixed-replace; boundary=frame")


@app.get("/depth_video")
async def depth_video(request: Request):
    pipeline = _require_pipeline(request)
    return StreamingResponse(get_depth_stream(pipeline, _jpeg_quality(request.app)),
                             media_type="multipart/x-mixed-replace; boundary=frame")


@app.get("/height_grid")
async def height_grid(request: Request):
    pipeline = _require_pipeline(request)
    return StreamingResponse(get_height_grid_stream(pipeline, _jpeg_quality(request.app)),
                             media_type="multipart/x-mixed-replace; boundary=frame")


@app.get("/", response_class=HTMLResponse)
async def index(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    input_size = pipeline.depth_processor.input_size if pipeline is not None else DEFAULT_INPUT_SIZE
    return INDEX_HTML.replace("__INPUT_SIZE__", str(input_size))


INDEX_HTML = """
    <html>
    <head>
        <title>Depth Pin-Art</title>
        <style>
            body { font-family: Arial, sans-serif; margin: 20px; background: #f0f0f0; }
            .container { display: flex; flex-wrap: wrap; gap: 15px; }
            .video-box { background: white; padding: 10px; border-radius: 5px; box-shadow: 0 2px 5px rgba(0,0,0,0.1); width: 320px; }
            .video-box img { display: block; width: 100%; height: auto; }
            h2 { margin-top: 0; color: #333; }
            .stats { margin-top: 20px; padding: 10px; background: #e8f5e9; border-radius: 5px; }
            #stats-container { font-family: monospace; }
        </style>
    </head>
    <body>
        <h1>Depth Pin-Art</h1>
        <div class="container">
            <div class="video-box"><h2>Camera</h2><img src="/video" alt="Camera Stream" /></div>
            <div class="video-box"><h2>Depth</h2><img src="/depth_video" alt="Depth Map" /></div>
            <div class="video-box"><h2>Pin Heights</h2><img src="/height_grid" alt="Pin Heights" /></div>
        </div>
        <div class="stats">
            <label for="size">Model input size: <span id="size-value">__INPUT_SIZE__</span></label>
            <input type="range" id="size" min="56" max="1022" step="14" value="__INPUT_SIZE__" />
            <h3>Performance Stats</h3>
            <div id="stats-container">Loading stats...</div>
        </div>
        <script>
            const slider = document.getElementById('size');
            const label = document.getElementById('size-value');
            slider.addEventListener('change', async () => {
                const response = await fetch('/input_size', {
                    method: 'POST',
                    headers: {'Content-Type': 'application/json'},
                    body: JSON.stringify({size: Number(slider.value)})
                });
                const result = await response.json();
                label.textContent = result.applied;
            });

            let sliderSynced = false;
            async function pollStats() {
                try {
                    const response = await fetch('/stats');
                    const stats = await response.json();
                    let html = '<table>';
                    html += `<tr><td>Camera FPS</td><td>${stats.fps.camera}</td></tr>`;
                    html += `<tr><td>Actuation FPS</td><td>${stats.fps.actuation}</td></tr>`;
                    html += `<tr><td>Inference (ms)</td><td>${stats.latency.inference}</td></tr>`;
                    html += `<tr><td>Actuation (ms)</td><td>${stats.latency.actuation}</td></tr>`;
                    html += `<tr><td>Depth age (ms)</td><td>${stats.latency.depth_age}</td></tr>`;
                    html += `<tr><td>Dropped frames</td><td>${stats.inference.dropped}</td></tr>`;
                    html += '</table>';
                    document.getElementById('stats-container').innerHTML = html;
                    label.textContent = stats.input_size;
                    if (!sliderSynced) {
                        slider.value = stats.input_size;
                        sliderSynced = true;
                    }
                } catch (e) {
                    console.error('Failed to fetch stats:', e);
                }
            }
            pollStats();
            setInterval(pollStats, 2000);
        </script>
    </body>
    </html>
    """


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    error_msg = f"An unexpected error occurred: {str(exc)}"
    logger.error(error_msg)
    logger.error(traceback.format_exc())
    return JSONResponse(status_code=500, content={"detail": error_msg})


# --- Main Execution (for running with uvicorn) ---
if __name__ == "__main__":
    import uvicorn

    server_config = load_config(CONFIG_PATH).get("server", {})
    host = server_config.get("host", "0.0.0.0")
    port = server_config.get("port", 8888)

    logger.info(f"Starting Uvicorn server on http://{host}:{port}")
    try:
        uvicorn.run(app, host=host, port=port)
    except KeyboardInterrupt:
        logger.info("Ctrl+C pressed. Shutting down the application.")
