# -*- coding: utf-8 -*-
"""
vcsmirror.config - 配置管理模块

配置文件为 TOML 格式，加载优先级（从高到低）:
1. --config/-c 参数显式指定的路径
2. 环境变量 VCSMIRROR_CONFIG
3. ./.vcsmirror/config.toml（当前目录）
4. ~/.vcsmirror/config.toml（用户家目录）

显式路径（参数或环境变量）不存在时报错；默认路径都不存在时使用空配置。

敏感凭证约束:
- Postgres marks 后端的 DSN 可通过环境变量 VCSMIRROR_MARKS_DSN 覆盖配置文件

运行时上下文:
- MirrorContext 把配置和 logger 显式传给 coordinator/scheduler/converter，
  核心逻辑不读取全局单例
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigNotFoundError, ConfigParseError, ConfigValueError

__all__ = [
    "ENV_CONFIG_PATH",
    "ENV_MARKS_DSN",
    "DEFAULT_CONFIG_PATHS",
    "LOGGER_NAME",
    "Config",
    "MirrorContext",
    "get_config",
    "reset_config",
    "add_config_argument",
    "configure_logging",
]

ENV_CONFIG_PATH = "VCSMIRROR_CONFIG"
ENV_MARKS_DSN = "VCSMIRROR_MARKS_DSN"

LOGGER_NAME = "vcsmirror"


def _default_config_paths() -> List[Path]:
    return [
        Path.cwd() / ".vcsmirror" / "config.toml",
        Path.home() / ".vcsmirror" / "config.toml",
    ]


# 仅用于展示，实际查找时按调用时的 cwd/home 重新计算
DEFAULT_CONFIG_PATHS = [".vcsmirror/config.toml", "~/.vcsmirror/config.toml"]


class Config:
    """TOML 配置"""

    def __init__(self, config_path: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        """
        Args:
            config_path: 显式配置文件路径（优先级最高）
            data: 直接提供的配置数据（测试或嵌入使用，跳过文件查找）
        """
        self._explicit_path = config_path
        self._data: Dict[str, Any] = dict(data) if data is not None else {}
        self._loaded = data is not None
        self.config_path: Optional[Path] = None

    def _resolve_path(self) -> Optional[Path]:
        if self._explicit_path:
            path = Path(self._explicit_path).expanduser()
            if not path.is_file():
                raise ConfigNotFoundError(
                    f"配置文件不存在: {path}", {"path": str(path), "source": "argument"}
                )
            return path

        env_path = os.environ.get(ENV_CONFIG_PATH)
        if env_path:
            path = Path(env_path).expanduser()
            if not path.is_file():
                raise ConfigNotFoundError(
                    f"环境变量 {ENV_CONFIG_PATH} 指向的配置文件不存在: {path}",
                    {"path": str(path), "source": "env"},
                )
            return path

        for candidate in _default_config_paths():
            if candidate.is_file():
                return candidate
        return None

    def load(self) -> "Config":
        """按优先级查找并加载配置文件"""
        path = self._resolve_path()
        self.config_path = path
        if path is None:
            self._data = {}
        else:
            try:
                with open(path, "rb") as f:
                    self._data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigParseError(
                    f"配置文件解析失败: {path}: {e}", {"path": str(path), "error": str(e)}
                ) from e
            except OSError as e:
                raise ConfigParseError(
                    f"配置文件读取失败: {path}: {e}", {"path": str(path), "error": str(e)}
                ) from e
        self._loaded = True
        return self

    def get(self, key: str, default: Any = None) -> Any:
        """
        按点号路径读取配置值

        示例: config.get("marks.backend", "file")
        """
        if not self._loaded:
            self.load()
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def require(self, key: str) -> Any:
        """读取必填配置值，缺失时抛出 ConfigValueError"""
        value = self.get(key)
        if value is None or value == "":
            raise ConfigValueError(f"缺少必填配置项: {key}", {"key": key})
        return value

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigValueError(
                f"配置项 {key} 必须是整数: {value!r}", {"key": key, "value": value}
            ) from e

    @property
    def marks_dsn(self) -> Optional[str]:
        """Postgres marks 后端 DSN（环境变量优先）"""
        return os.environ.get(ENV_MARKS_DSN) or self.get("marks.dsn")

    def to_dict(self) -> Dict[str, Any]:
        if not self._loaded:
            self.load()
        return dict(self._data)


@dataclass(frozen=True)
class MirrorContext:
    """
    运行上下文

    由 CLI 或调用方构造后显式传入 coordinator/scheduler/converter。
    """

    config: Config = field(default_factory=lambda: Config(data={}))
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(LOGGER_NAME))

    def child(self, suffix: str) -> "MirrorContext":
        """派生一个使用子 logger 的上下文"""
        return MirrorContext(config=self.config, logger=self.logger.getChild(suffix))


# 全局配置实例（仅 CLI 入口使用）
_global_config: Optional[Config] = None


def get_config(config_path: Optional[str] = None, reload: bool = False) -> Config:
    """获取全局配置实例"""
    global _global_config
    if _global_config is None or reload or config_path is not None:
        _global_config = Config(config_path).load()
    return _global_config


def reset_config() -> None:
    """重置全局配置实例"""
    global _global_config
    _global_config = None


def add_config_argument(parser) -> None:
    """为 argparse.ArgumentParser 添加 --config/-c 参数"""
    parser.add_argument(
        "-c",
        "--config",
        dest="config_path",
        metavar="PATH",
        help=f"配置文件路径（默认读取 ${ENV_CONFIG_PATH} 或 {DEFAULT_CONFIG_PATHS}）",
    )


def configure_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """
    初始化 CLI 日志输出（stderr）

    默认 WARNING，--verbose 为 INFO，--debug 为 DEBUG。

    Returns:
        vcsmirror 根 logger
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    return logger
