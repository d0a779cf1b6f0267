"""积分存储子系统的异常层次。

所有异常均派生自 :class:`IntegralStoreError`，并按语义同时继承相应的内建异常，
以便调用方既可按子系统整体捕获，也可按 ``ValueError`` / ``KeyError`` /
``OSError`` 捕获。
"""

from __future__ import annotations

__all__ = [
    "IntegralStoreError",
    "ConfigurationError",
    "NamespaceConflict",
    "NamespaceMissing",
    "ShapeMismatch",
    "StoreIOError",
    "HandleReleaseError",
    "StoreClosedError",
]


class IntegralStoreError(Exception):
    """积分存储子系统异常基类。"""


class ConfigurationError(IntegralStoreError, ValueError):
    """维度参数非法（基函数数、k 点数或势函数项数 <= 0）。"""


class NamespaceConflict(IntegralStoreError):
    """``create`` 时根组已存在。"""


class NamespaceMissing(IntegralStoreError, KeyError):
    """``open`` 时缺少预期的组或数据集，或槽位地址越界。"""

    def __str__(self) -> str:
        # KeyError 默认会给消息加引号
        return str(self.args[0]) if self.args else ""


class ShapeMismatch(IntegralStoreError, ValueError):
    """磁盘上的数据形状与当前运行解析出的 MatrixShape 不一致。"""


class StoreIOError(IntegralStoreError, OSError):
    """底层 HDF5 读写失败。"""


class StoreClosedError(IntegralStoreError):
    """对已关闭的存储进行操作。"""


class HandleReleaseError(IntegralStoreError):
    r"""关闭过程中一个或多个句柄释放失败。

    Attributes
    ----------
    failures : list[tuple[str, BaseException]]
        ``(句柄标签, 异常)`` 列表，顺序与释放顺序一致。
    """

    def __init__(self, failures: list[tuple[str, BaseException]]):
        self.failures = list(failures)
        labels = ", ".join(label for label, _ in self.failures)
        super().__init__(f"{len(self.failures)} 个句柄释放失败: {labels}")
