"""
vcsmirror.errors - 错误定义模块

定义镜像 worker 与 CLI 可能抛出的异常类型，统一错误码和错误消息格式。

退出码约定:
    0   - 成功
    1   - 通用错误 / 配置错误 (MIRROR_ERROR / CONFIG_ERROR)
    3   - 仓库 I/O 错误 (REPOSITORY_ERROR)
    4   - 非法外部状态 (ILLEGAL_STATE)
    5   - 转换错误 (CONVERSION_ERROR)
    6   - 状态损坏 (STATE_CORRUPTION)
    7   - marks 存储错误 (MARK_STORE_ERROR)
"""

from typing import Any, Dict, List, Optional

# =============================================================================
# 退出码
# =============================================================================


class ExitCode:
    """退出码常量"""

    SUCCESS = 0
    MIRROR_ERROR = 1
    # 不可恢复的配置错误统一以 1 退出
    CONFIG_ERROR = 1
    REPOSITORY_ERROR = 3
    ILLEGAL_STATE = 4
    CONVERSION_ERROR = 5
    STATE_CORRUPTION = 6
    MARK_STORE_ERROR = 7


# =============================================================================
# 基础异常类
# =============================================================================


class MirrorError(Exception):
    """vcsmirror 基础异常类"""

    exit_code: int = ExitCode.MIRROR_ERROR
    error_type: str = "MIRROR_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        转换为可序列化的字典格式

        格式: {ok: false, code: str, message: str, detail: dict}
        """
        return {
            "ok": False,
            "code": self.error_type,
            "message": self.message,
            "detail": self.details,
        }


# =============================================================================
# 配置相关错误 (exit_code = 1)
# =============================================================================


class ConfigError(MirrorError):
    """配置相关错误"""

    exit_code = ExitCode.CONFIG_ERROR
    error_type = "CONFIG_ERROR"


class ConfigNotFoundError(ConfigError):
    """配置文件未找到"""

    error_type = "CONFIG_NOT_FOUND"


class ConfigParseError(ConfigError):
    """配置文件解析错误"""

    error_type = "CONFIG_PARSE_ERROR"


class ConfigValueError(ConfigError):
    """配置值无效"""

    error_type = "CONFIG_VALUE_ERROR"


# =============================================================================
# 仓库 I/O 错误 (exit_code = 3)
# =============================================================================


class RepositoryError(MirrorError):
    """仓库 I/O 错误（clone/fetch/checkout/pull 等），对当前运行是致命的"""

    exit_code = ExitCode.REPOSITORY_ERROR
    error_type = "REPOSITORY_ERROR"


class RepositoryCommandError(RepositoryError):
    """VCS 命令执行失败"""

    error_type = "REPOSITORY_COMMAND_ERROR"

    def __init__(
        self,
        message: str,
        *,
        cmd: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        merged.update({"cmd": cmd or [], "returncode": returncode, "stderr": stderr.strip()})
        super().__init__(message, merged)
        self.cmd = cmd or []
        self.returncode = returncode
        self.stderr = stderr


# =============================================================================
# 非法外部状态 (exit_code = 4)
# =============================================================================


class IllegalStateError(MirrorError):
    """外部状态非法（目录在检查和打开之间消失或被破坏），需要人工介入"""

    exit_code = ExitCode.ILLEGAL_STATE
    error_type = "ILLEGAL_STATE"


# =============================================================================
# 转换错误 (exit_code = 5/6)
# =============================================================================


class ConversionError(MirrorError):
    """单个提交转换失败"""

    exit_code = ExitCode.CONVERSION_ERROR
    error_type = "CONVERSION_ERROR"


class StateCorruptionError(MirrorError):
    """目标仓库 head 与最大 key 的 mark 不一致（目标被带外修改）"""

    exit_code = ExitCode.STATE_CORRUPTION
    error_type = "STATE_CORRUPTION"


# =============================================================================
# marks 存储错误 (exit_code = 7)
# =============================================================================


class MarkStoreError(MirrorError):
    """marks 存储错误基类"""

    exit_code = ExitCode.MARK_STORE_ERROR
    error_type = "MARK_STORE_ERROR"


class MarkFormatError(MarkStoreError):
    """marks 文件格式错误（字段数、hash 格式、重复 key）"""

    error_type = "MARK_FORMAT_ERROR"


class MarkSequenceError(MarkStoreError):
    """marks 序列不满足稠密递增或 hash 唯一约束"""

    error_type = "MARK_SEQUENCE_ERROR"


class MarkConflictError(MarkStoreError):
    """乐观并发写入在重试次数内未能成功"""

    error_type = "MARK_CONFLICT"


class MarkPersistenceError(MarkStoreError):
    """
    marks 未能持久化（marks 丢失）

    conversion_error 保存同一次运行中转换阶段抛出的异常（如有）。
    """

    error_type = "MARK_PERSISTENCE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        conversion_error: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if conversion_error is not None:
            merged["conversion_error"] = f"{type(conversion_error).__name__}: {conversion_error}"
        super().__init__(message, merged)
        self.conversion_error = conversion_error
