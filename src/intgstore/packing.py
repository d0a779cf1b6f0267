r"""对称/厄米矩阵的压缩存储。

:math:`N\times N` 矩阵只保存上三角（含对角）的 :math:`N(N+1)/2` 个独立元素，
按列优先排列：元素 :math:`(i, j),\ i\le j` 位于线性下标

.. math::
    p(i, j) = i + \frac{j(j+1)}{2}

（下标从 0 开始）。压缩数组形状为 ``(component_axis, N(N+1)/2)``：第 0 行为实部，
复数运行时第 1 行为虚部。厄米矩阵的下三角由 :math:`H_{ji} = \overline{H_{ij}}`
恢复。
"""

from __future__ import annotations

import numpy as np

from .dims import MatrixShape, packed_length
from .errors import ShapeMismatch

__all__ = [
    "packed_index",
    "basis_count",
    "pack_matrix",
    "unpack_matrix",
]


def packed_index(i: int, j: int) -> int:
    """元素 ``(i, j)`` 在压缩数组中的线性下标（对 i、j 对称）。"""
    if i > j:
        i, j = j, i
    if i < 0:
        raise IndexError("矩阵下标必须非负")
    return i + j * (j + 1) // 2


def basis_count(length: int) -> int:
    r"""由压缩长度 :math:`L = N(N+1)/2` 反解 :math:`N`。"""
    n = int((np.sqrt(8 * length + 1) - 1) // 2)
    # 浮点开方可能差 1，用整数校正
    while n * (n + 1) // 2 < length:
        n += 1
    while n > 0 and n * (n + 1) // 2 > length:
        n -= 1
    if n <= 0 or n * (n + 1) // 2 != length:
        raise ShapeMismatch(f"长度 {length} 不是三角数，无法对应压缩对称矩阵")
    return n


def _upper_indices(n: int) -> tuple[np.ndarray, np.ndarray]:
    # tril_indices 按行优先给出 (r, c), c <= r；交换后即上三角的列优先顺序
    rows, cols = np.tril_indices(n)
    return cols, rows


def pack_matrix(matrix: np.ndarray, shape: MatrixShape) -> np.ndarray:
    r"""将完整对称/厄米矩阵压缩为 ``shape.dims`` 形状的 float64 数组。

    Parameters
    ----------
    matrix : numpy.ndarray
        :math:`N\times N` 对称（实）或厄米（复）矩阵；在容差内满足
        :math:`M = M^\dagger` 后只保存上三角。
    shape : MatrixShape
        目标形状；``packed_length`` 必须与 :math:`N` 匹配。

    Returns
    -------
    numpy.ndarray
        形状 ``(component_axis, N(N+1)/2)`` 的 float64 数组。

    Notes
    -----
    - 非对称/非厄米矩阵（含对角元带虚部）抛出 :class:`ShapeMismatch`，不丢弃下三角。
    - 仅实部模式下，若矩阵含非零虚部则抛出 :class:`ShapeMismatch`，不做静默截断。
    """
    m = np.asarray(matrix)
    if m.ndim != 2 or m.shape[0] != m.shape[1]:
        raise ShapeMismatch(f"需要方阵，得到形状 {m.shape}")
    n = m.shape[0]
    if packed_length(n) != shape.packed_length:
        raise ShapeMismatch(f"{n}x{n} 矩阵的压缩长度为 {packed_length(n)}，而存储要求 {shape.packed_length}")
    if not np.allclose(m, m.conj().T):
        raise ShapeMismatch("矩阵不是对称/厄米矩阵，压缩存储会丢失下三角")
    iu, ju = _upper_indices(n)
    upper = m[iu, ju]
    out = np.empty(shape.dims, dtype=np.float64)
    out[0] = np.real(upper)
    if shape.is_complex:
        out[1] = np.imag(upper)
    elif np.iscomplexobj(upper) and np.any(np.imag(upper) != 0.0):
        raise ShapeMismatch("仅实部存储不能保存含非零虚部的矩阵")
    return out


def unpack_matrix(packed: np.ndarray) -> np.ndarray:
    r"""由压缩数组重建完整矩阵。

    Parameters
    ----------
    packed : numpy.ndarray
        形状 ``(1, L)`` 或 ``(2, L)``，:math:`L=N(N+1)/2`。

    Returns
    -------
    numpy.ndarray
        ``(1, L)`` 返回实对称 float64 矩阵；``(2, L)`` 返回厄米 complex128 矩阵。
    """
    p = np.asarray(packed, dtype=np.float64)
    if p.ndim != 2 or p.shape[0] not in (1, 2):
        raise ShapeMismatch(f"压缩数组形状必须为 (1|2, L)，得到 {p.shape}")
    n = basis_count(p.shape[1])
    iu, ju = _upper_indices(n)
    if p.shape[0] == 1:
        full = np.zeros((n, n), dtype=np.float64)
        full[iu, ju] = p[0]
        full[ju, iu] = p[0]
        return full
    values = p[0] + 1j * p[1]
    full = np.zeros((n, n), dtype=np.complex128)
    full[ju, iu] = np.conj(values)
    full[iu, ju] = values
    return full
