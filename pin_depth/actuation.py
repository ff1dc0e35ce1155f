"""
ピンへの高さ反映（アクチュエーション）

Writes normalized grid heights to actuators: the in-process PinBoard, or any
other object implementing the ActuatorSink interface.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Protocol

import numpy as np

logger = logging.getLogger("pin_depth.actuation")

ACTUATION_MODES = ("offset", "scale")


class ActuatorSink(Protocol):
    """Anything that can receive one normalized height per grid cell."""

    def __len__(self) -> int:
        ...

    def set_cell_height(self, index: int, normalized_height: float) -> None:
        ...


@dataclass
class Pin:
    index: int
    x: float
    z: float
    base_y: float
    position_y: float
    scale_y: float = 1.0


def apply_heights(grid, sink: ActuatorSink):
    """
    Apply every cell of a height grid to its actuator.

    Cell (gx, gy) drives actuator gy * grid_size + gx.

    Raises:
        ValueError: grid and sink have a different number of cells
    """
    heights = np.asarray(grid, dtype=np.float64).reshape(-1)
    if heights.size != len(sink):
        raise ValueError(
            f"Height grid has {heights.size} cells but the actuator sink has {len(sink)} actuators"
        )
    for index, value in enumerate(heights):
        sink.set_cell_height(index, float(value))


class PinBoard:
    """
    Simulated pin-art board.

    "offset" mode moves each pin up by norm * height_scale from y = 0.
    "scale" mode stretches each pin by 1 + norm * height_scale around its
    base position pin_height / 2.
    """

    def __init__(self, grid_size: int, spacing: float = 0.4, pin_height: float = 5.0,
                 mode: str = "offset", height_scale: float = 5.0):
        if mode not in ACTUATION_MODES:
            raise ValueError(f"Unknown actuation mode: {mode}. Expected one of {ACTUATION_MODES}")
        self.grid_size = int(grid_size)
        self.spacing = spacing
        self.pin_height = pin_height
        self.mode = mode
        self.height_scale = height_scale
        self._lock = threading.Lock()
        self.pins: List[Pin] = self._build_pins()
        logger.info(
            f"PinBoard created: {self.grid_size}x{self.grid_size} pins, spacing={spacing}, "
            f"mode={mode}, height_scale={height_scale}"
        )

    def _build_pins(self) -> List[Pin]:
        offset = (self.grid_size * self.spacing) / 2
        base_y = 0.0 if self.mode == "offset" else self.pin_height / 2
        pins = []
        for gy in range(self.grid_size):
            for gx in range(self.grid_size):
                pins.append(Pin(
                    index=gy * self.grid_size + gx,
                    x=gx * self.spacing - offset,
                    z=gy * self.spacing - offset,
                    base_y=base_y,
                    position_y=base_y,
                ))
        return pins

    def __len__(self) -> int:
        return len(self.pins)

    def set_cell_height(self, index: int, normalized_height: float) -> None:
        pin = self.pins[index]
        if self.mode == "offset":
            pin.position_y = self.height_scale * normalized_height
        else:
            pin.scale_y = 1.0 + normalized_height * self.height_scale
            pin.position_y = pin.base_y * pin.scale_y

    def apply(self, grid):
        """Apply a whole grid under the board lock so readers never see half a frame."""
        with self._lock:
            apply_heights(grid, self)

    def snapshot(self) -> dict:
        """Current pin state as plain lists, indexed by pin index."""
        with self._lock:
            return {
                "x": [p.x for p in self.pins],
                "y": [p.position_y for p in self.pins],
                "z": [p.z for p in self.pins],
                "scale_y": [p.scale_y for p in self.pins],
            }
