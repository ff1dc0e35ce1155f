"""
ピンアート深度処理モジュール
"""
from .sampler import sample_depth_quadratic, sample_depth_quadratic_batch, lagrange_interpolate
from .height_field import DepthBuffer, HeightFieldMapper, compute_heights, grid_sample_coordinates
from .actuation import ActuatorSink, PinBoard, apply_heights
from .frame_loop import DepthProvider, LatestSlot, DepthSlot, InferenceWorker, ActuationLoop, PinPipeline
from .depth_model import DepthProcessor, initialize_depth_model
from .visualization import create_depth_visualization, create_default_depth_image, create_height_grid_visualization
