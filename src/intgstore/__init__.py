"""intgstore 包
=================

多阶段电子结构计算流水线中积分矩阵的分层 HDF5 存储。

setup 阶段计算重叠、动能、核吸引与势函数重叠积分后写入容器；后续阶段
（main、band、dos、bond、optc、wave）按同一拓扑重新打开容器读取矩阵。本包提供：

- 维度解析：压缩形状 ``(1|2, N(N+1)/2)``
- 存储策略：整块分块 + deflate 压缩
- 命名空间拓扑：创建与打开共用的声明式描述
- 积分存储生命周期：``create`` / ``open`` / ``close``
- 对称/厄米矩阵的压缩与展开

注：本项目所有文档与注释均使用中文，Docstring 采用 Sphinx + NumPy 风格，公式使用 ``:math:`` 标记。
"""

from intgstore.config import IntegralConfig, default_setup_path
from intgstore.dims import MatrixShape, packed_length, resolve_shape
from intgstore.errors import (
    ConfigurationError,
    HandleReleaseError,
    IntegralStoreError,
    NamespaceConflict,
    NamespaceMissing,
    ShapeMismatch,
    StoreClosedError,
    StoreIOError,
)
from intgstore.layout import LayoutPolicy
from intgstore.namespace import IntegralKind, SlotAddress, Topology, resolve_kind, scan_namespace
from intgstore.packing import pack_matrix, unpack_matrix
from intgstore.store import IntegralStore

__all__ = [
    "IntegralConfig",
    "default_setup_path",
    "MatrixShape",
    "packed_length",
    "resolve_shape",
    "LayoutPolicy",
    "IntegralKind",
    "SlotAddress",
    "Topology",
    "resolve_kind",
    "scan_namespace",
    "pack_matrix",
    "unpack_matrix",
    "IntegralStore",
    "IntegralStoreError",
    "ConfigurationError",
    "NamespaceConflict",
    "NamespaceMissing",
    "ShapeMismatch",
    "StoreIOError",
    "HandleReleaseError",
    "StoreClosedError",
]

__version__ = "0.1.0"
