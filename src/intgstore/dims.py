from __future__ import annotations

import numbers
from dataclasses import dataclass

from .errors import ConfigurationError

__all__ = [
    "as_index",
    "MatrixShape",
    "packed_length",
    "resolve_shape",
]


def as_index(value) -> int | None:
    """整数（含 numpy 整数）转为 ``int``；布尔值与非整数返回 ``None``。"""
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        return None
    return int(value)


def packed_length(n_basis: int) -> int:
    r"""对称/厄米矩阵压缩存储长度 :math:`N(N+1)/2`（含对角元）。

    Parameters
    ----------
    n_basis : int
        价基函数个数 :math:`N`，要求 :math:`N>0`。

    Returns
    -------
    int
        上三角（含对角）独立元素个数，整数精确计算。
    """
    n = as_index(n_basis)
    if n is None or n <= 0:
        raise ConfigurationError(f"基函数个数必须为正整数，得到 {n_basis!r}")
    return n * (n + 1) // 2


@dataclass(frozen=True)
class MatrixShape:
    r"""单个积分矩阵在磁盘上的压缩形状 ``(component_axis, packed_length)``。

    Attributes
    ----------
    component_axis : int
        1 表示仅实部（Gamma 点/实数运行），2 表示实部 + 虚部。
    packed_length : int
        :math:`N(N+1)/2`。
    """

    component_axis: int
    packed_length: int

    @property
    def dims(self) -> tuple[int, int]:
        return (self.component_axis, self.packed_length)

    @property
    def is_complex(self) -> bool:
        return self.component_axis == 2

    @classmethod
    def from_space(cls, space) -> "MatrixShape":
        """从已有数据集的 dataspace 句柄（``h5py.h5s.SpaceID``）恢复形状。"""
        dims = tuple(int(d) for d in space.get_simple_extent_dims())
        if len(dims) != 2:
            raise ConfigurationError(f"积分数据集必须是二维的，得到维度 {dims}")
        return cls(component_axis=dims[0], packed_length=dims[1])


def resolve_shape(n_basis: int, gamma: bool) -> MatrixShape:
    r"""根据基函数个数与运行模式计算共享的 MatrixShape。

    Parameters
    ----------
    n_basis : int
        价基函数个数 :math:`N`。
    gamma : bool
        ``True`` 表示仅实数运行（单一 Gamma k 点），否则为复数多 k 点运行。

    Returns
    -------
    MatrixShape
        ``(1 或 2, N(N+1)/2)``。

    Examples
    --------
    >>> resolve_shape(4, gamma=True).dims
    (1, 10)
    >>> resolve_shape(4, gamma=False).dims
    (2, 10)
    """
    return MatrixShape(component_axis=1 if gamma else 2, packed_length=packed_length(n_basis))
