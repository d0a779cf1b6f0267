from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .dims import MatrixShape, as_index, resolve_shape
from .errors import ConfigurationError

__all__ = [
    "IntegralConfig",
    "default_setup_path",
    "SETUP_PATH_ENV",
]

SETUP_PATH_ENV = "INTGSTORE_SETUP_PATH"


@dataclass(frozen=True)
class IntegralConfig:
    r"""一次运行的积分存储维度参数。

    这些量由上游（基组、k 点生成、势展开）给出，``create`` 与 ``open``
    必须使用同样的配置。

    Attributes
    ----------
    n_basis : int
        价基函数个数 :math:`N`（valeDim）。
    num_kpoints : int
        k 点个数。
    pot_dim : int
        势展开项数（potDim）。
    gamma : bool
        ``True`` 表示仅实部运行；否则每个矩阵同时存实部与虚部。
    """

    n_basis: int
    num_kpoints: int
    pot_dim: int
    gamma: bool = False

    def __post_init__(self):
        for name in ("n_basis", "num_kpoints", "pot_dim"):
            value = getattr(self, name)
            count = as_index(value)
            if count is None or count <= 0:
                raise ConfigurationError(f"{name} 必须为正整数，得到 {value!r}")
            # 统一为 int，numpy 整数写入名称与日志时不带类型前缀
            object.__setattr__(self, name, count)
        object.__setattr__(self, "gamma", bool(self.gamma))

    @property
    def shape(self) -> MatrixShape:
        return resolve_shape(self.n_basis, self.gamma)


def default_setup_path() -> Path:
    """返回 setup 容器文件路径。

    优先级：
    1. 环境变量 ``INTGSTORE_SETUP_PATH``
    2. 当前目录下的 ``setup.hdf5``
    """
    env_path = os.environ.get(SETUP_PATH_ENV)
    if env_path:
        return Path(env_path)
    return Path.cwd() / "setup.hdf5"
