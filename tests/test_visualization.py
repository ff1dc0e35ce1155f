import numpy as np

from pin_depth.height_field import DepthBuffer
from pin_depth.visualization import (
    create_default_depth_image,
    create_depth_visualization,
    create_height_grid_visualization,
    depth_to_grayscale,
    draw_sampling_points,
)


def test_depth_to_grayscale_is_inverted():
    depth = np.array([[0.0, 1.0, 2.0],
                      [0.0, 1.0, 2.0],
                      [0.0, 1.0, 2.0]])
    gray = depth_to_grayscale(DepthBuffer.from_array(depth))

    assert gray.dtype == np.uint8
    assert gray.shape == (3, 3)
    # near (max) is dark, far (min) is bright
    assert gray[0, 0] == 255
    assert gray[0, 2] == 0
    assert 0 < gray[0, 1] < 255


def test_depth_to_grayscale_uniform():
    gray = depth_to_grayscale(DepthBuffer.from_array(np.full((4, 5), 2.0)))
    assert np.all(gray == 255)


def test_create_depth_visualization_sizes():
    depth_buffer = DepthBuffer.from_array(np.random.default_rng(0).random((30, 40)))

    vis = create_depth_visualization(depth_buffer)
    assert vis.shape == (30, 40, 3)

    vis = create_depth_visualization(depth_buffer, output_size=(80, 60), grid_size=4)
    assert vis.shape == (60, 80, 3)


def test_create_depth_visualization_without_data():
    vis = create_depth_visualization(None, output_size=(64, 48))
    assert vis.shape == (48, 64, 3)


def test_draw_sampling_points_marks_grid():
    image = np.zeros((16, 16, 3), dtype=np.uint8)
    draw_sampling_points(image, 16, 16, 3, color=(0, 0, 255))
    # gridSize 3 on 16 pixels samples columns / rows 4, 12, 14
    assert image[4, 4, 2] == 255
    assert image[12, 12, 2] == 255
    assert image[8, 8, 2] == 0


def test_create_default_depth_image():
    image = create_default_depth_image(64, 32, text="Waiting")
    assert image.shape == (32, 64, 3)
    assert image.dtype == np.uint8


def test_create_height_grid_visualization():
    heights = np.linspace(0, 1, 16, dtype=np.float32).reshape(4, 4)
    output = create_height_grid_visualization(heights, cell_size=10)
    assert output.shape == (40, 40, 3)

    output = create_height_grid_visualization(heights, cell_size=2)
    assert output.shape == (8, 8, 3)


def test_create_height_grid_visualization_empty():
    output = create_height_grid_visualization(None)
    assert output.shape == (240, 320, 3)
