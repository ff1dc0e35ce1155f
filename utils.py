"""
ユーティリティ関数モジュール
"""

import copy
import json
import os
import logging
import sys
from typing import Dict, Any, Optional

logger = logging.getLogger("utils")

ENV_PREFIX = "PINS"

DEFAULT_CONFIG = {
    "camera": {
        "device_id": 0,
        "width": 720,
        "height": 720,
        "fps": 30
    },
    "depth_model": {
        "model_path": "models/depth_anything_v2_small.onnx",
        "input_size": 504,
        "normalize": True,
        "providers": ["CPUExecutionProvider"]
    },
    "pins": {
        "grid_size": 120,
        "spacing": 0.4,
        "pin_height": 5.0,
        "actuation_mode": "offset",
        "height_scale": 5.0,
        "fallback_height": 0.0
    },
    "pipeline": {
        "autostart": True,
        "display_fps": 60,
        "camera_interval_s": 0.03,
        "max_camera_errors": 5
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8888,
        "jpeg_quality": 70
    },
    "client": {
        "server_ip": "localhost",
        "server_port": 8888,
        "request_timeout_s": 5.0,
        "visualization": {
            "point_size": 2,
            "height_limit": 6.0,
            "animation_interval_ms": 100,
            "view_elevation": 35,
            "view_azimuth": -60
        }
    },
    "logging": {
        "level": "INFO",
        "file": None
    }
}


def setup_logger(name: str, log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    ロギングシステムをセットアップします

    Args:
        name: ロガー名
        log_level: ログレベル（"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"）
        log_file: ログファイルパス（Noneの場合はコンソールのみ）

    Returns:
        logging.Logger: 設定されたロガーインスタンス
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    logger_ = logging.getLogger(name)
    logger_.setLevel(level)

    # すでにハンドラーがあれば一旦クリア
    if logger_.hasHandlers():
        logger_.handlers.clear()

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger_.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger_.addHandler(file_handler)

    return logger_


def _coerce_env_value(default_value, env_value: str):
    """環境変数の文字列を既定値の型に合わせて変換する"""
    if isinstance(default_value, bool):
        return env_value.lower() in ('true', 'yes', '1')
    if isinstance(default_value, int):
        return int(env_value)
    if isinstance(default_value, float):
        return float(env_value)
    if isinstance(default_value, list):
        return [item.strip() for item in env_value.split(",") if item.strip()]
    return env_value


def load_config(config_path: str = "config_pins.json") -> Dict[str, Any]:
    """
    設定ファイルを読み込みます

    Args:
        config_path: 設定ファイルのパス

    Returns:
        Dict: 設定データの辞書（既定値 + ファイル + 環境変数）
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
            # セクション単位でマージ
            for key, value in loaded_config.items():
                if key in config and isinstance(value, dict) and isinstance(config[key], dict):
                    config[key].update(value)
                else:
                    config[key] = value
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"設定ファイル読み込みエラー ({config_path}): {e}. Using defaults.")
    else:
        logger.info(f"Config file {config_path} not found, using defaults.")

    # 環境変数から上書き: PINS_PINS_GRID_SIZE, PINS_CAMERA_DEVICE_ID など
    for section, values in config.items():
        if not isinstance(values, dict):
            continue
        for key, current in values.items():
            env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
            if env_var not in os.environ or isinstance(current, dict):
                continue
            env_value = os.environ[env_var]
            try:
                values[key] = _coerce_env_value(current, env_value)
            except ValueError:
                logger.warning(f"Ignoring {env_var}={env_value!r}: cannot convert to {type(current).__name__}")

    return config
