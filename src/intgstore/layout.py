r"""积分数据集的物理存储策略。

所有积分矩阵都整块读写，因此分块大小直接取整个数组形状（每个数据集恰好一个块），
并开启无损 deflate 压缩。该策略在一次运行中只构造一次，所有数据集共享同一个
dataset-creation 属性列表。
"""

from __future__ import annotations

from dataclasses import dataclass

import h5py

from .dims import MatrixShape
from .errors import ShapeMismatch

__all__ = [
    "DEFLATE_LEVEL",
    "LayoutPolicy",
]

DEFLATE_LEVEL = 1


@dataclass(frozen=True)
class LayoutPolicy:
    r"""分块与压缩参数。

    Attributes
    ----------
    chunks : tuple[int, int]
        分块形状，等于矩阵形状 ``(component_axis, packed_length)``。
    deflate_level : int
        gzip/deflate 压缩级别。
    """

    chunks: tuple[int, int]
    deflate_level: int = DEFLATE_LEVEL

    @classmethod
    def for_shape(cls, shape: MatrixShape) -> "LayoutPolicy":
        return cls(chunks=shape.dims, deflate_level=DEFLATE_LEVEL)

    def build_plist(self) -> h5py.h5p.PropDCID:
        """创建新的 dataset-creation 属性列表句柄（调用方负责释放）。"""
        plist = h5py.h5p.create(h5py.h5p.DATASET_CREATE)
        plist.set_layout(h5py.h5d.CHUNKED)
        plist.set_chunk(self.chunks)
        plist.set_deflate(self.deflate_level)
        return plist

    @classmethod
    def from_plist(cls, plist) -> "LayoutPolicy":
        """从已有数据集的属性列表恢复策略；非分块或未压缩视为不一致。"""
        if plist.get_layout() != h5py.h5d.CHUNKED:
            raise ShapeMismatch("积分数据集不是分块布局")
        chunks = tuple(int(c) for c in plist.get_chunk())
        info = plist.get_filter_by_id(h5py.h5z.FILTER_DEFLATE)
        if info is None:
            raise ShapeMismatch("积分数据集未启用 deflate 压缩")
        values = info[1]
        level = int(values[0]) if len(values) else DEFLATE_LEVEL
        return cls(chunks=chunks, deflate_level=level)

    def check(self, shape: MatrixShape) -> None:
        """校验分块形状与矩阵形状一致（整块读写）。"""
        if self.chunks != shape.dims:
            raise ShapeMismatch(f"分块形状 {self.chunks} 与矩阵形状 {shape.dims} 不一致")
