"""
vcsmirror.io - CLI I/O 工具模块

约定:
- stdout: 机器可读的 JSON 输出（--json）或进度信息
- stderr: 人读信息（日志、单行错误诊断）
- 失败: stderr 输出一行 "error: <message>"，--json 时 stdout 同时输出 {ok: false, code, message, detail}
- 错误时返回非 0 exit code（取异常的 exit_code）
"""

import json
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ExitCode, MirrorError

__all__ = [
    "output_json",
    "log_error",
    "report_error",
]


def output_json(data: Any) -> None:
    """输出单行 JSON 到 stdout"""
    print(json.dumps(data, ensure_ascii=False, default=_json_serializer), file=sys.stdout)


def log_error(message: str) -> None:
    """输出单行错误诊断到 stderr"""
    first_line = message.strip().splitlines()[0] if message.strip() else "unknown error"
    print(f"error: {first_line}", file=sys.stderr)


def report_error(error: BaseException, json_mode: bool = False) -> int:
    """
    报告错误并返回对应的 exit code

    MirrorError 使用自身的 exit_code，其他异常按通用错误处理。
    """
    if isinstance(error, MirrorError):
        log_error(error.message)
        if json_mode:
            output_json(error.to_dict())
        return error.exit_code

    log_error(f"未预期的错误: {error}")
    if json_mode:
        output_json(
            {
                "ok": False,
                "code": "UNEXPECTED_ERROR",
                "message": str(error),
                "detail": {"exception_type": type(error).__name__},
            }
        )
    return ExitCode.MIRROR_ERROR


def _json_serializer(obj: Any) -> Any:
    """JSON 序列化器，处理特殊类型"""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(obj)
