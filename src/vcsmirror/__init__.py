"""
vcsmirror - 增量、可续跑的跨 VCS 分支镜像

提供：
- coordinator: 单个镜像的周期运行（源缓存维护、marks 加载、全量/增量转换、保证持久化）
- mark_store: marks 存储（file / hosted / postgres）
- converter: 转换引擎契约与快照重放实现
- scheduler: 带排他准入的 work item 调度
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
