import pytest
import numpy as np
from unittest.mock import MagicMock

from pin_depth.depth_model import (
    DEFAULT_INPUT_SIZE,
    MAX_INPUT_SIZE,
    MIN_INPUT_SIZE,
    DepthProcessor,
    initialize_depth_model,
    snap_input_size,
)
from pin_depth.height_field import DepthBuffer

# To run tests, navigate to the project root and run: pytest


def _mock_session(output, input_name="image"):
    model_input = MagicMock()
    model_input.name = input_name
    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.run.return_value = [output]
    return session


@pytest.fixture
def mocked_model_config(dummy_config, monkeypatch):
    """Pretend the model file exists; each test installs its own session."""
    monkeypatch.setattr("pin_depth.depth_model.os.path.exists", lambda path: True)
    return dummy_config


# --- snap_input_size ---

@pytest.mark.parametrize("requested, expected", [
    (504, 504),
    (500, 504),
    (510, 504),
    (512, 518),
    (10, MIN_INPUT_SIZE),
    (5000, MAX_INPUT_SIZE),
])
def test_snap_input_size(requested, expected):
    assert snap_input_size(requested) == expected
    assert snap_input_size(requested) % 14 == 0


# --- DepthProcessor without a model ---

def test_depth_processor_initialization(dummy_config):
    processor = DepthProcessor(dummy_config)
    assert processor.config == dummy_config
    assert processor.model_path == dummy_config["depth_model"]["model_path"]
    assert processor.model is None  # The dummy path does not exist
    assert processor.input_name is None
    assert processor.input_size == 56
    assert not processor.is_available()


def test_depth_processor_defaults_without_section():
    processor = initialize_depth_model({})
    assert processor.model is None
    assert processor.input_size == DEFAULT_INPUT_SIZE


def test_depth_processor_predict_dummy_data(dummy_depth_processor):
    depth_buffer, inference_time = dummy_depth_processor.predict(np.zeros((48, 64, 3), dtype=np.uint8))

    assert isinstance(depth_buffer, DepthBuffer)
    assert depth_buffer.width == depth_buffer.height == dummy_depth_processor.input_size
    assert inference_time == 0.0
    depth = depth_buffer.as_2d()
    # Vertical gradient: far at the top, near at the bottom
    assert np.all(depth[0, :] < depth[-1, :])
    assert depth.min() >= 0.1 and depth.max() <= 0.9


def test_dummy_depth_follows_input_size(dummy_depth_processor):
    applied = dummy_depth_processor.set_input_size(100)
    assert applied == 98
    depth_buffer, _ = dummy_depth_processor.predict(None)
    assert (depth_buffer.width, depth_buffer.height) == (98, 98)


def test_depth_processor_process_frame(dummy_depth_processor):
    original_height, original_width = 480, 640
    frame = np.random.randint(0, 256, (original_height, original_width, 3), dtype=np.uint8)

    tensor = dummy_depth_processor.process_frame(frame)

    size = dummy_depth_processor.input_size
    assert tensor.shape == (1, 3, size, size)
    assert tensor.dtype == np.float32
    assert tensor.flags["C_CONTIGUOUS"]


def test_process_frame_without_normalization(dummy_config):
    dummy_config["depth_model"]["normalize"] = False
    processor = DepthProcessor(dummy_config)
    frame = np.full((20, 30, 3), 255, dtype=np.uint8)

    tensor = processor.process_frame(frame)
    np.testing.assert_allclose(tensor, 1.0)


def test_process_frame_none_raises(dummy_depth_processor):
    with pytest.raises(ValueError):
        dummy_depth_processor.process_frame(None)


# --- DepthProcessor with a mocked session ---

def test_predict_with_mocked_session(mocked_model_config, monkeypatch):
    raw = np.linspace(0.0, 5.0, 56 * 56, dtype=np.float32).reshape(1, 56, 56)
    session = _mock_session(raw)
    constructor = MagicMock(return_value=session)
    monkeypatch.setattr("pin_depth.depth_model.ort.InferenceSession", constructor)

    processor = DepthProcessor(mocked_model_config)
    assert processor.is_available()
    constructor.assert_called_once_with(
        mocked_model_config["depth_model"]["model_path"],
        providers=mocked_model_config["depth_model"]["providers"],
    )

    depth_buffer, inference_time = processor.predict(np.zeros((48, 64, 3), dtype=np.uint8))

    args, _ = session.run.call_args
    assert args[0] is None
    assert args[1]["image"].shape == (1, 3, 56, 56)
    assert (depth_buffer.width, depth_buffer.height) == (56, 56)
    np.testing.assert_allclose(depth_buffer.data, raw.reshape(-1))
    assert inference_time >= 0.0


def test_predict_sanitizes_non_finite_output(mocked_model_config, monkeypatch):
    raw = np.ones((1, 1, 4, 4), dtype=np.float32)
    raw[0, 0, 0, 0] = np.nan
    raw[0, 0, 1, 1] = np.inf
    raw[0, 0, 2, 2] = 3.0
    monkeypatch.setattr("pin_depth.depth_model.ort.InferenceSession", lambda path, providers: _mock_session(raw))

    processor = DepthProcessor(mocked_model_config)
    depth_buffer, _ = processor.predict(np.zeros((8, 8, 3), dtype=np.uint8))

    depth = depth_buffer.as_2d()
    assert np.all(np.isfinite(depth))
    assert depth[0, 0] == 1.0
    assert depth[1, 1] == 3.0


def test_predict_returns_none_on_inference_error(mocked_model_config, monkeypatch):
    session = _mock_session(None)
    session.run.side_effect = RuntimeError("device lost")
    monkeypatch.setattr("pin_depth.depth_model.ort.InferenceSession", lambda path, providers: session)

    processor = DepthProcessor(mocked_model_config)
    depth_buffer, inference_time = processor.predict(np.zeros((8, 8, 3), dtype=np.uint8))

    # A loaded model that fails yields no buffer, not synthetic depth
    assert depth_buffer is None
    assert inference_time >= 0.0


def test_predict_returns_none_on_empty_outputs(mocked_model_config, monkeypatch):
    session = _mock_session(None)
    session.run.return_value = []
    monkeypatch.setattr("pin_depth.depth_model.ort.InferenceSession", lambda path, providers: session)

    processor = DepthProcessor(mocked_model_config)
    depth_buffer, _ = processor.predict(np.zeros((8, 8, 3), dtype=np.uint8))

    assert depth_buffer is None


def test_session_creation_failure_disables_model(mocked_model_config, monkeypatch):
    def broken_session(path, providers):
        raise RuntimeError("bad model file")

    monkeypatch.setattr("pin_depth.depth_model.ort.InferenceSession", broken_session)
    processor = DepthProcessor(mocked_model_config)
    assert processor.model is None
    assert not processor.is_available()
