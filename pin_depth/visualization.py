"""
深度マップ・ピン高さグリッドの可視化関連機能
"""

import cv2
import numpy as np
import logging

from .height_field import DepthBuffer, grid_sample_coordinates

# ロガーの取得
logger = logging.getLogger("pin_depth.visualization")


def depth_to_grayscale(depth_buffer: DepthBuffer) -> np.ndarray:
    """
    深度バッファを 8bit グレースケールに変換（近い=暗い）

    Returns:
        (H, W) uint8 画像。深度が一様な場合は全て 255
    """
    depth = depth_buffer.as_2d().astype(np.float32)
    min_val = float(np.min(depth))
    max_val = float(np.max(depth))
    depth_range = max_val - min_val
    if depth_range <= 0:
        return np.full(depth.shape, 255, dtype=np.uint8)
    normalized = (depth - min_val) / depth_range
    return np.clip(255.0 * (1.0 - normalized), 0, 255).astype(np.uint8)


def draw_sampling_points(image, width, height, grid_size, color=(0, 0, 255)):
    """
    ピンがサンプリングする位置を画像上に描画する

    Args:
        image: BGR 画像（深度バッファと同じか、拡大済みの解像度）
        width, height: 深度バッファの解像度
        grid_size: グリッドサイズ
    """
    us, vs = grid_sample_coordinates(width, height, grid_size)
    scale_x = image.shape[1] / width
    scale_y = image.shape[0] / height
    for v in vs:
        for u in us:
            center = (int(round(u * scale_x)), int(round(v * scale_y)))
            cv2.circle(image, center, 1, color, -1)
    return image


def create_depth_visualization(depth_buffer, output_size=None, grid_size=None):
    """
    深度マップの可視化を行う

    Args:
        depth_buffer: DepthBuffer
        output_size: (width, height)。None の場合は深度バッファの解像度
        grid_size: 指定された場合、サンプリング位置を重ねて描画

    Returns:
        BGR 画像
    """
    if depth_buffer is None:
        logger.warning("Empty depth buffer received for visualization")
        width, height = output_size or (320, 240)
        return create_default_depth_image(width, height, text="Waiting for depth...")

    gray = depth_to_grayscale(depth_buffer)
    vis = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)
    if output_size is not None:
        vis = cv2.resize(vis, tuple(output_size), interpolation=cv2.INTER_NEAREST)
    if grid_size is not None:
        draw_sampling_points(vis, depth_buffer.width, depth_buffer.height, grid_size)
    return vis


def create_default_depth_image(width=640, height=480, text=None):
    """
    デフォルトの深度イメージを生成（データがない場合のプレースホルダ）

    Args:
        width: 画像幅
        height: 画像高さ
        text: 表示するテキスト（Noneの場合はテキストなし）
    """
    default_depth_image = np.zeros((height, width, 3), dtype=np.uint8)

    # グラデーション背景
    gradient = (255 * np.arange(height) / height).astype(np.uint8)
    default_depth_image[:, :, 2] = gradient[:, np.newaxis]

    if text is not None:
        font_scale = max(0.5, min(min(width, height) / 500.0, 1.5))
        thickness = max(1, int(font_scale * 2))
        font_face = cv2.FONT_HERSHEY_SIMPLEX
        (text_width, text_height), _ = cv2.getTextSize(text, font_face, font_scale, thickness)
        text_x = max(0, (width - text_width) // 2)
        text_y = (height + text_height) // 2
        cv2.putText(default_depth_image, text, (text_x, text_y),
                    font_face, font_scale, (255, 255, 255), thickness)

    return default_depth_image


def create_height_grid_visualization(heights, cell_size=4, draw_grid_lines=None):
    """
    ピン高さグリッド（0〜1）の可視化を行う

    Args:
        heights: (grid_size, grid_size) の正規化済み高さ
        cell_size: セルサイズ（ピクセル）
        draw_grid_lines: グリッド線を描くか。None の場合は cell_size >= 8 のとき描く

    Returns:
        グリッド可視化画像 (BGR)
    """
    if heights is None or np.size(heights) == 0:
        logger.warning("Empty height grid received for visualization.")
        return create_default_depth_image(320, 240, text="Waiting for pins...")

    heights = np.asarray(heights, dtype=np.float32)
    rows, cols = heights.shape
    colored = cv2.applyColorMap(
        (np.clip(heights, 0, 1) * 255).astype(np.uint8),
        cv2.COLORMAP_MAGMA
    )
    output = cv2.resize(colored, (cols * cell_size, rows * cell_size), interpolation=cv2.INTER_NEAREST)

    if draw_grid_lines is None:
        draw_grid_lines = cell_size >= 8
    if draw_grid_lines:
        for i in range(rows + 1):
            y = i * cell_size
            cv2.line(output, (0, y), (cols * cell_size, y), (50, 50, 50), 1)
        for j in range(cols + 1):
            x = j * cell_size
            cv2.line(output, (x, 0), (x, rows * cell_size), (50, 50, 50), 1)

    return output
