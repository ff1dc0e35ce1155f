import copy

import pytest
import numpy as np

from utils import DEFAULT_CONFIG


@pytest.fixture
def dummy_config():
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["depth_model"]["model_path"] = "dummy/path/to/model.onnx"  # Test with a dummy path
    config["depth_model"]["input_size"] = 56
    config["pins"]["grid_size"] = 4
    config["pipeline"]["autostart"] = False
    return config


@pytest.fixture
def dummy_depth_processor(dummy_config):
    from pin_depth.depth_model import DepthProcessor

    # The dummy path never loads, so predict() falls back to synthetic depth
    processor = DepthProcessor(dummy_config)
    assert processor.model is None
    return processor


@pytest.fixture
def peak_buffer_values():
    """4x4 buffer with a raised 2x2 block in the middle."""
    return [
        0, 0, 0, 0,
        0, 10, 10, 0,
        0, 10, 10, 0,
        0, 0, 0, 0,
    ]


class FakeCamera:
    def __init__(self, frame=None):
        self.frame = frame if frame is not None else np.zeros((48, 64, 3), dtype=np.uint8)
        self.released = False

    def get_frame(self):
        return self.frame

    def release(self):
        self.released = True


@pytest.fixture
def fake_camera():
    return FakeCamera()
