import matplotlib.pyplot as plt
import numpy as np
import requests
import time
import json
from matplotlib.animation import FuncAnimation
import logging

from utils import load_config

# Logger setup
logger = logging.getLogger("pin_client")
logger.setLevel(logging.INFO)
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def safe_json_parse(text):
    """Parse JSON text, returning None for empty or malformed input."""
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        logger.error(f"Error decoding JSON: {e}")
        return None


class DataReceiver:
    """Handles fetching pin state from the pin server."""
    def __init__(self, server_url: str, endpoint: str = "/pins", request_timeout_s: float = 5.0):
        self.base_url = server_url.rstrip('/')
        self.endpoint = endpoint
        self.url = f"{self.base_url}{self.endpoint}"
        self.request_timeout_s = request_timeout_s
        logger.info(f"DataReceiver initialized. Target URL: {self.url}")

    def fetch_data(self) -> dict | None:
        """Fetches pin data from the server."""
        try:
            response = requests.get(self.url, timeout=self.request_timeout_s)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Error fetching data from {self.url}: {e}")
            return None

        data = safe_json_parse(response.text)
        if data is None:
            return None
        if data.get("error_message"):
            logger.warning(f"Server reported: {data['error_message']}")
        logger.debug(f"Fetched {len(data.get('y', []))} pins, timestamp: {data.get('timestamp')}")
        return data


class PinVisualizer:
    """Draws the pin board as a real-time 3D scatter plot."""
    def __init__(self, fig, ax, vis_config: dict):
        self.fig = fig
        self.ax = ax
        self.scatter = None
        self.config = vis_config
        self.point_size = self.config.get("point_size", 2)
        self.height_limit = self.config.get("height_limit", 6.0)
        self.animation_interval = self.config.get("animation_interval_ms", 100)

        self.ax.set_xlabel("X")
        self.ax.set_ylabel("Z")
        self.ax.set_zlabel("Height")
        self.ax.set_title("Depth Pin-Art")
        self.ax.set_zlim(0, self.height_limit)
        self.ax.view_init(elev=self.config.get("view_elevation", 35), azim=self.config.get("view_azimuth", -60))

        self.frame_count = 0
        self.start_time = time.time()
        self.fps_text = self.fig.text(0.02, 0.95, "")
        self.pins_text = self.fig.text(0.02, 0.90, "")
        self.connection_status_text = self.fig.text(0.02, 0.85, "Status: Connecting...")

        logger.info("PinVisualizer initialized.")

    def _clear(self):
        if self.scatter is not None:
            self.scatter.remove()
            self.scatter = None

    def update_plot(self, _frame, data_receiver: DataReceiver):
        """Fetches the latest pin state and redraws the board."""
        data = data_receiver.fetch_data()

        if data and data.get("y"):
            x = np.asarray(data.get("x", []), dtype=np.float32)
            y = np.asarray(data.get("y", []), dtype=np.float32)
            z = np.asarray(data.get("z", []), dtype=np.float32)
            if x.shape == y.shape == z.shape:
                self._clear()
                # scale モードではピンが height_limit を超えるので、縦軸をデータに合わせる
                top = max(self.height_limit, float(y.max()))
                self.ax.set_zlim(0, top)
                # 高さ（y）を縦軸に
                self.scatter = self.ax.scatter(x, z, y, s=self.point_size, c=y, cmap='viridis',
                                               vmin=0, vmax=top)
                self.pins_text.set_text(f"Pins: {len(y)} ({data.get('actuation_mode', '?')})")
                self.connection_status_text.set_text("Status: Connected")
                self.connection_status_text.set_color("green")
            else:
                logger.warning(f"Pin arrays have mismatched lengths: x={x.shape}, y={y.shape}, z={z.shape}")
                self.pins_text.set_text("Pins: 0 (invalid format)")
                self.connection_status_text.set_text("Status: Data format error")
                self.connection_status_text.set_color("red")
        else:
            self._clear()
            self.pins_text.set_text("Pins: 0 (no data)")
            self.connection_status_text.set_text("Status: Disconnected/No Data")
            self.connection_status_text.set_color("orange")

        self.frame_count += 1
        elapsed_time = time.time() - self.start_time
        if elapsed_time > 0:
            self.fps_text.set_text(f"Client FPS: {self.frame_count / elapsed_time:.2f}")

        return self.scatter, self.fps_text, self.pins_text, self.connection_status_text


def main():
    config_path = "config_pins.json"
    config = load_config(config_path)

    client_config = config.get("client", {})
    server_ip = client_config.get("server_ip", "localhost")
    server_port = client_config.get("server_port", config.get("server", {}).get("port", 8888))
    server_url = f"http://{server_ip}:{server_port}"

    data_receiver = DataReceiver(
        server_url=server_url,
        endpoint="/pins",
        request_timeout_s=client_config.get("request_timeout_s", 5.0),
    )

    vis_config = client_config.get("visualization", {})
    fig = plt.figure(figsize=vis_config.get("figure_size", (10, 8)))
    ax = fig.add_subplot(111, projection='3d')
    visualizer = PinVisualizer(fig, ax, vis_config)

    ani = FuncAnimation(fig, visualizer.update_plot, fargs=(data_receiver,),
                        interval=visualizer.animation_interval, blit=False,
                        cache_frame_data=False)

    plt.show()
    logger.info("Pin client stopped.")
    return ani


if __name__ == "__main__":
    main()
