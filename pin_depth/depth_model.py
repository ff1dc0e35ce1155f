"""
深度推定モデル関連の処理
"""

import cv2
import numpy as np
import time
import os
import logging

import onnxruntime as ort

from .height_field import DepthBuffer

# ロガーの取得（ハンドラは utils.setup_logger("pin_depth") で設定）
logger = logging.getLogger("pin_depth.depth_model")

# Depth Anything はパッチサイズ 14 の倍数の入力を取る
INPUT_SIZE_STEP = 14
MIN_INPUT_SIZE = 56
MAX_INPUT_SIZE = 1022
DEFAULT_INPUT_SIZE = 504

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def snap_input_size(size) -> int:
    """Round a requested input size to the nearest supported value."""
    snapped = int(round(float(size) / INPUT_SIZE_STEP)) * INPUT_SIZE_STEP
    return max(MIN_INPUT_SIZE, min(MAX_INPUT_SIZE, snapped))


class DepthProcessor:
    """深度推定処理クラス"""

    def __init__(self, config: dict):
        """
        初期化

        Args:
            config: 設定辞書 (config_pins.json の内容)
        """
        self.config = config
        depth_model_config = self.config.get("depth_model", {})
        self.model_path = depth_model_config.get("model_path")
        self.providers = depth_model_config.get("providers", ["CPUExecutionProvider"])
        self.normalize = depth_model_config.get("normalize", True)
        self.input_size = snap_input_size(depth_model_config.get("input_size", DEFAULT_INPUT_SIZE))

        if not self.model_path:
            logger.error("'model_path' not defined in the 'depth_model' section of the configuration.")

        self.model = self._initialize_model()
        self.input_name = None
        if self.model:
            try:
                model_inputs = self.model.get_inputs()
                if model_inputs and len(model_inputs) > 0:
                    self.input_name = model_inputs[0].name
                else:
                    logger.error("Failed to get model inputs or inputs are empty.")
                    self.model = None
            except Exception as e:
                logger.error(f"Failed to get model input name: {e}")
                self.model = None

    def _initialize_model(self):
        """モデルを初期化"""
        if not self.model_path:
            logger.error("Cannot initialize model: model_path is not set.")
            return None

        if not os.path.exists(self.model_path):
            logger.warning(f"Model file not found: {self.model_path}. Using synthetic depth.")
            return None

        try:
            logger.info(f"Loading model from {self.model_path} (providers={self.providers})")
            session = ort.InferenceSession(self.model_path, providers=self.providers)
            logger.info("Model session created successfully")
            return session
        except Exception as e:
            logger.error(f"Failed to create inference session: {e}")
            import traceback
            logger.error(traceback.format_exc())
            return None

    def set_input_size(self, size) -> int:
        """
        モデル入力解像度を変更する

        The depth buffer resolution follows the input size from the next
        inference onward; the pin grid is unaffected.

        Returns:
            実際に適用されたサイズ
        """
        applied = snap_input_size(size)
        if applied != self.input_size:
            logger.info(f"Model input size changed: {self.input_size} -> {applied} (requested {size})")
        self.input_size = applied
        return applied

    def process_frame(self, frame):
        """
        フレームを処理用に前処理

        Args:
            frame: 入力画像 (BGR, HxWx3)

        Returns:
            (1, 3, size, size) float32 テンソル
        """
        if frame is None:
            logger.error("Input frame is None in process_frame.")
            raise ValueError("フレームの読み込みに失敗しました")

        size = self.input_size
        resized = cv2.resize(frame, (size, size), interpolation=cv2.INTER_CUBIC)
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        if self.normalize:
            rgb = (rgb - IMAGENET_MEAN) / IMAGENET_STD
        return np.ascontiguousarray(rgb.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    def predict(self, frame):
        """
        深度推定を実行

        Returns:
            (DepthBuffer, inference_time)。モデル未設定の場合は合成深度、
            推論に失敗した場合は (None, inference_time)
        """
        if not self.is_available():
            logger.debug("Using dummy depth data (model not available or not initialized correctly)")
            return self._generate_dummy_depth(size=(self.input_size, self.input_size)), 0.0

        start_time = time.time()
        try:
            input_tensor = self.process_frame(frame)
            logger.debug(f"Input tensor shape: {input_tensor.shape}, dtype: {input_tensor.dtype}")

            outputs = self.model.run(None, {self.input_name: input_tensor})
            if outputs is None or len(outputs) == 0:
                logger.error("Inference returned empty outputs")
                return None, time.time() - start_time

            depth_map = np.squeeze(outputs[0]).astype(np.float32)
            logger.debug(f"Raw depth output shape: {outputs[0].shape}, squeezed: {depth_map.shape}")

            if np.isnan(depth_map).any() or np.isinf(depth_map).any():
                logger.warning("Depth map contains NaN or Inf values. Clamping them.")
                finite = depth_map[np.isfinite(depth_map)]
                low = float(finite.min()) if finite.size else 0.0
                high = float(finite.max()) if finite.size else 0.0
                depth_map = np.nan_to_num(depth_map, nan=low, posinf=high, neginf=low)

            depth_buffer = DepthBuffer.from_array(depth_map)
            inference_time = time.time() - start_time
            logger.debug(
                f"Depth {depth_buffer.width}x{depth_buffer.height}, range "
                f"{np.min(depth_map):.4f} to {np.max(depth_map):.4f}, {inference_time * 1000:.1f}ms"
            )
            return depth_buffer, inference_time

        except Exception as e:
            logger.error(f"Inference error: {e}")
            import traceback
            logger.error(traceback.format_exc())
            return None, time.time() - start_time

    def _generate_dummy_depth(self, size=(DEFAULT_INPUT_SIZE, DEFAULT_INPUT_SIZE)):
        """テスト用のダミー深度マップを生成 (size は (height, width))"""
        output_h, output_w = size
        rows = 0.1 + 0.8 * (np.arange(output_h, dtype=np.float32) / output_h)
        dummy_depth = np.repeat(rows[:, np.newaxis], output_w, axis=1)
        return DepthBuffer.from_array(dummy_depth)

    def is_available(self):
        """モデルが利用可能かどうかを返す"""
        return self.model is not None and self.input_name is not None


def initialize_depth_model(config: dict):
    """
    深度推定モデルを初期化する便利関数

    Args:
        config: 設定辞書

    Returns:
        DepthProcessor インスタンス
    """
    return DepthProcessor(config)
