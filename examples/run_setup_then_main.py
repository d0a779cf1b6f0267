#!/usr/bin/env python
"""模拟 setup → main 两个阶段对同一积分容器的使用。

setup 阶段创建命名空间并写入每个槽位；main 阶段以只读方式重新打开容器，
读取重叠矩阵与势函数重叠矩阵并组装一个示意性的 Hamiltonian。
"""

import logging
import sys
from pathlib import Path

# 添加 src 到路径
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import numpy as np

from intgstore import IntegralConfig, IntegralKind, IntegralStore, default_setup_path


def run_setup(path: Path, cfg: IntegralConfig) -> None:
    rng = np.random.default_rng(0)
    n = cfg.n_basis
    with IntegralStore.create(path, cfg) as store:
        for address in store.addresses():
            a = rng.normal(size=(n, n))
            if not cfg.gamma:
                a = a + 1j * rng.normal(size=(n, n))
            m = 0.5 * (a + a.conj().T)
            if address.kind is IntegralKind.OVERLAP:
                # 重叠矩阵正定
                m = m @ m.conj().T + n * np.eye(n)
            store.write_matrix(address.kind, address.kpoint, address.term, m)


def run_main(path: Path, cfg: IntegralConfig, coeffs: np.ndarray) -> None:
    with IntegralStore.open(path, cfg) as store:
        for k in range(1, cfg.num_kpoints + 1):
            s = store.read_matrix(IntegralKind.OVERLAP, k)
            h = store.read_matrix(IntegralKind.KINETIC, k) + store.read_matrix(IntegralKind.NUCLEAR, k)
            for j in range(1, cfg.pot_dim + 1):
                h = h + coeffs[j - 1] * store.read_matrix(IntegralKind.POTENTIAL, k, j)
            print(f"k={k}: tr(S)={np.trace(s).real:.6f}  tr(H)={np.trace(h).real:.6f}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    path = default_setup_path()
    if path.exists():
        path.unlink()
    cfg = IntegralConfig(n_basis=6, num_kpoints=4, pot_dim=3, gamma=False)
    run_setup(path, cfg)
    run_main(path, cfg, coeffs=np.array([0.5, -0.25, 0.125]))
