r"""积分存储：创建、打开与关闭。

:class:`IntegralStore` 持有积分命名空间中全部 HDF5 句柄：

- 根组、四个种类子组以及 ``atomPotOverlap`` 下每个 k 点的子组；
- 每个槽位的数据集句柄；
- 所有数据集共享的一个 dataspace 句柄与一个 dataset-creation 属性列表句柄。

生命周期
========

- :meth:`IntegralStore.create`：从零建立命名空间（根组已存在则失败）；
- :meth:`IntegralStore.open`：对已有容器按同一拓扑逐级打开，并用第一个数据集的
  dataspace/属性列表与当前运行的 MatrixShape 做一致性校验；
- :meth:`IntegralStore.close`：按依赖顺序释放全部句柄。单个句柄释放失败只记录，
  继续释放其余句柄，最后统一抛出 :class:`HandleReleaseError`。

创建或打开中途失败时，已获取的句柄会被立即释放，然后重新抛出原始异常。
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable

import h5py
import numpy as np

from .config import IntegralConfig
from .dims import MatrixShape
from .errors import (
    HandleReleaseError,
    IntegralStoreError,
    NamespaceConflict,
    NamespaceMissing,
    ShapeMismatch,
    StoreClosedError,
    StoreIOError,
)
from .layout import LayoutPolicy
from .namespace import ROOT_GROUP, IntegralKind, SlotAddress, Topology
from .packing import pack_matrix, unpack_matrix

__all__ = [
    "IntegralStore",
]

logger = logging.getLogger(__name__)

GroupKey = tuple  # 名称元组，例如 ("atomIntgGroup", "atomPotOverlap", "0000001")


@contextmanager
def _hdf5_errors(action: str):
    """将 h5py/HDF5 异常统一转换为 :class:`StoreIOError`。"""
    try:
        yield
    except IntegralStoreError:
        raise
    except Exception as exc:
        raise StoreIOError(f"{action} 失败: {exc}") from exc


def _release(oid) -> None:
    """释放一个低层句柄；已失效的句柄直接跳过。"""
    if oid.valid:
        h5py.h5i.dec_ref(oid)


def _resolve_container(container, mode: str) -> tuple[h5py.Group, h5py.File | None]:
    """容器可以是已打开的组/文件（调用方持有），也可以是文件路径（由存储持有）。"""
    if isinstance(container, h5py.Group):
        return container, None
    with _hdf5_errors(f"以模式 {mode!r} 打开容器 {container}"):
        f = h5py.File(Path(container), mode)
    return f, f


class IntegralStore:
    r"""积分矩阵槽位集合及其全部句柄的唯一持有者。

    不直接实例化；使用 :meth:`create` 或 :meth:`open`。

    Attributes
    ----------
    config : IntegralConfig
        本次运行的维度参数。
    topology : Topology
        由 ``config`` 导出的命名空间描述。
    writable : bool
        是否允许写入槽位。
    """

    def __init__(self, container: h5py.Group, config: IntegralConfig, *,
                 writable: bool, owned_file: h5py.File | None = None):
        self.config = config
        self.topology = Topology.from_config(config)
        self.writable = writable
        self._container = container
        self._owned_file = owned_file
        self._expected = config.shape
        self._shape: MatrixShape | None = None
        self._layout: LayoutPolicy | None = None
        self._groups: dict[GroupKey, h5py.Group] = {}
        self._datasets: dict[SlotAddress, h5py.Dataset] = {}
        self._space = None
        self._plist = None
        self._closed = False

    # ------------------------------------------------------------------
    # 创建 / 打开
    # ------------------------------------------------------------------

    @classmethod
    def create(cls, container, config: IntegralConfig) -> "IntegralStore":
        r"""在容器中新建完整的积分命名空间。

        Parameters
        ----------
        container : h5py.Group | str | pathlib.Path
            目标文件或组；给出路径时以追加模式打开，文件由存储持有并在
            :meth:`close` 时关闭。
        config : IntegralConfig
            维度参数。

        Returns
        -------
        IntegralStore
            可写存储，全部槽位已创建（内容未写入）。

        Raises
        ------
        NamespaceConflict
            容器中已存在 ``/atomIntgGroup``；已有数据保持不变。
        StoreIOError
            任一 HDF5 创建步骤失败；已创建的句柄会先被释放。
        """
        group, owned = _resolve_container(container, "a")
        store = cls(group, config, writable=True, owned_file=owned)
        store._guarded(store._build_new)
        logger.debug("已创建积分命名空间：%d 个 k 点，%d 个势函数项，形状 %s",
                     config.num_kpoints, config.pot_dim, store.shape.dims)
        return store

    @classmethod
    def open(cls, container, config: IntegralConfig, *, writable: bool = False) -> "IntegralStore":
        r"""按当前运行配置打开已有的积分命名空间。

        Parameters
        ----------
        container : h5py.Group | str | pathlib.Path
            已写好的文件或组；给出路径时以 ``"r"``（``writable=True`` 时 ``"r+"``）打开。
        config : IntegralConfig
            当前运行的维度参数，必须与创建时一致。
        writable : bool
            默认 ``False``：下游阶段只读，槽位写入一律拒绝。``True`` 仅供 setup
            阶段修复或补写已有容器使用；给出路径时以 ``"r+"`` 打开，给出组时
            还要求其所在文件本身可写。

        Raises
        ------
        NamespaceMissing
            缺少任何预期的组或数据集。
        ShapeMismatch
            存储的形状与当前 MatrixShape 不一致（不做截断或填充）。
        """
        group, owned = _resolve_container(container, "r+" if writable else "r")
        store = cls(group, config, writable=writable and group.file.mode != "r",
                    owned_file=owned)
        store._guarded(store._build_existing)
        logger.debug("已打开积分命名空间：%d 个槽位，形状 %s",
                     len(store._datasets), store.shape.dims)
        return store

    def _guarded(self, build: Callable[[], None]) -> None:
        try:
            build()
        except BaseException:
            try:
                self.close()
            except HandleReleaseError as release_exc:
                logger.error("构建失败后的清理未能释放全部句柄: %s", release_exc)
            raise

    def _walk(self,
              make_group: Callable[[h5py.Group, GroupKey], h5py.Group],
              make_dataset: Callable[[h5py.Group, SlotAddress], h5py.Dataset],
              before_slots: Callable[[], None] | None = None) -> None:
        """按拓扑顺序依次获取全部组与数据集句柄；创建和打开共用这一遍历。"""
        for key in self.topology.groups():
            parent = self._groups[key[:-1]] if len(key) > 1 else self._container
            self._groups[key] = make_group(parent, key)
        if before_slots is not None:
            before_slots()
        for address in self.topology.slots():
            self._datasets[address] = make_dataset(self._groups[address.parent], address)

    def _build_new(self) -> None:
        if ROOT_GROUP in self._container:
            raise NamespaceConflict(f"容器中已存在 /{ROOT_GROUP}，拒绝覆盖")
        self._walk(self._create_group, self._create_dataset, before_slots=self._prepare_shared)

    def _build_existing(self) -> None:
        self._walk(self._open_group, self._open_dataset)
        self._fetch_shared()

    def _prepare_shared(self) -> None:
        # 共享的 dataspace 与属性列表只构造一次，所有数据集引用同一对句柄
        self._shape = self._expected
        self._layout = LayoutPolicy.for_shape(self._shape)
        with _hdf5_errors("创建共享 dataspace"):
            self._space = h5py.h5s.create_simple(self._shape.dims)
        with _hdf5_errors("创建共享属性列表"):
            self._plist = self._layout.build_plist()

    def _fetch_shared(self) -> None:
        first = self._datasets[next(self.topology.slots())]
        with _hdf5_errors("读取属性列表"):
            self._plist = first.id.get_create_plist()
        with _hdf5_errors("读取 dataspace"):
            self._space = first.id.get_space()
        shape = MatrixShape.from_space(self._space)
        if shape != self._expected:
            raise ShapeMismatch(f"存储形状 {shape.dims} 与当前运行要求的 {self._expected.dims} 不一致")
        layout = LayoutPolicy.from_plist(self._plist)
        layout.check(shape)
        self._shape = shape
        self._layout = layout

    def _create_group(self, parent: h5py.Group, key: GroupKey) -> h5py.Group:
        with _hdf5_errors(f"创建组 /{'/'.join(key)}"):
            return parent.create_group(key[-1])

    def _open_group(self, parent: h5py.Group, key: GroupKey) -> h5py.Group:
        with _hdf5_errors(f"打开组 /{'/'.join(key)}"):
            obj = parent.get(key[-1])
        if obj is None:
            raise NamespaceMissing(f"缺少组 /{'/'.join(key)}")
        if not isinstance(obj, h5py.Group):
            _release(obj.id)
            raise NamespaceMissing(f"/{'/'.join(key)} 不是组")
        return obj

    def _create_dataset(self, parent: h5py.Group, address: SlotAddress) -> h5py.Dataset:
        with _hdf5_errors(f"创建数据集 {address.path}"):
            dsid = h5py.h5d.create(parent.id, address.parts[-1].encode("ascii"),
                                   h5py.h5t.NATIVE_DOUBLE, self._space, dcpl=self._plist)
            return h5py.Dataset(dsid)

    def _open_dataset(self, parent: h5py.Group, address: SlotAddress) -> h5py.Dataset:
        with _hdf5_errors(f"打开数据集 {address.path}"):
            obj = parent.get(address.parts[-1])
        if obj is None:
            raise NamespaceMissing(f"缺少数据集 {address.path}")
        if not isinstance(obj, h5py.Dataset):
            _release(obj.id)
            raise NamespaceMissing(f"{address.path} 不是数据集")
        if obj.shape != self._expected.dims or obj.dtype != np.float64:
            found = (obj.shape, obj.dtype)
            _release(obj.id)
            raise ShapeMismatch(f"{address.path} 的形状/类型为 {found}，"
                                f"当前运行要求 {self._expected.dims} float64")
        return obj

    # ------------------------------------------------------------------
    # 关闭
    # ------------------------------------------------------------------

    def close(self) -> None:
        r"""释放全部句柄。

        顺序：属性列表 → 各槽位数据集（k 点外层、势函数项内层）→ dataspace →
        k 点子组 → 种类子组 → 根组 → （若由存储打开）文件。

        Raises
        ------
        StoreClosedError
            存储已关闭。
        HandleReleaseError
            至少一个句柄释放失败；其余句柄仍已尝试释放。
        """
        if self._closed:
            raise StoreClosedError("积分存储已关闭")
        self._closed = True
        failures: list[tuple[str, BaseException]] = []

        def drain(label: str, oid) -> None:
            try:
                _release(oid)
            except Exception as exc:
                logger.error("释放句柄 %s 失败: %s", label, exc)
                failures.append((label, exc))

        if self._plist is not None:
            drain("dataset-creation plist", self._plist)
        for address in self.topology.slots():
            ds = self._datasets.get(address)
            if ds is not None:
                drain(address.path, ds.id)
        if self._space is not None:
            drain("dataspace", self._space)
        for key in self.topology.group_release_order():
            group = self._groups.get(key)
            if group is not None:
                drain("/" + "/".join(key), group.id)

        released = len(self._datasets) + len(self._groups)
        self._datasets.clear()
        self._groups.clear()
        self._plist = None
        self._space = None

        if self._owned_file is not None:
            try:
                self._owned_file.close()
            except Exception as exc:
                logger.error("关闭容器文件失败: %s", exc)
                failures.append(("file", exc))
            self._owned_file = None

        logger.debug("已释放 %d 个组/数据集句柄，失败 %d 个", released, len(failures))
        if failures:
            raise HandleReleaseError(failures)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "IntegralStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            self.close()

    # ------------------------------------------------------------------
    # 槽位访问
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("积分存储已关闭，不能再访问槽位")

    @property
    def shape(self) -> MatrixShape:
        """所有槽位共享的 MatrixShape。"""
        self._check_open()
        return self._shape

    @property
    def layout(self) -> LayoutPolicy:
        """所有槽位共享的存储策略。"""
        self._check_open()
        return self._layout

    def addresses(self) -> tuple[SlotAddress, ...]:
        """当前持有句柄的全部槽位地址（遍历顺序）。"""
        self._check_open()
        return tuple(self._datasets)

    def slot(self, kind: IntegralKind | str, kpoint: int, term: int | None = None) -> h5py.Dataset:
        r"""返回槽位 ``(kind, kpoint[, term])`` 的数据集句柄。

        ``kpoint`` 与 ``term`` 均从 1 开始；``term`` 仅用于
        :attr:`IntegralKind.POTENTIAL`。
        """
        self._check_open()
        return self._datasets[self.topology.address(kind, kpoint, term)]

    def read_packed(self, kind: IntegralKind | str, kpoint: int, term: int | None = None) -> np.ndarray:
        """整块读取压缩数组，形状 ``shape.dims``。"""
        ds = self.slot(kind, kpoint, term)
        with _hdf5_errors(f"读取 {ds.name}"):
            return ds[()]

    def write_packed(self, kind: IntegralKind | str, kpoint: int, term: int | None,
                     data: np.ndarray) -> None:
        """整块写入压缩数组；形状必须与 ``shape.dims`` 完全一致。"""
        ds = self.slot(kind, kpoint, term)
        if not self.writable:
            raise StoreIOError(f"存储以只读方式打开，不能写入 {ds.name}")
        arr = np.asarray(data, dtype=np.float64)
        if arr.shape != self._shape.dims:
            raise ShapeMismatch(f"写入 {ds.name} 的数组形状 {arr.shape} 与 {self._shape.dims} 不一致")
        with _hdf5_errors(f"写入 {ds.name}"):
            ds[...] = arr

    def read_matrix(self, kind: IntegralKind | str, kpoint: int, term: int | None = None) -> np.ndarray:
        """读取并展开为完整的对称（实）或厄米（复）矩阵。"""
        return unpack_matrix(self.read_packed(kind, kpoint, term))

    def write_matrix(self, kind: IntegralKind | str, kpoint: int, term: int | None,
                     matrix: np.ndarray) -> None:
        """压缩完整矩阵的上三角后写入。"""
        self._check_open()
        self.write_packed(kind, kpoint, term, pack_matrix(matrix, self._shape))

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"{len(self._datasets)} slots"
        return (f"IntegralStore(n_basis={self.config.n_basis}, num_kpoints={self.config.num_kpoints}, "
                f"pot_dim={self.config.pot_dim}, gamma={self.config.gamma}, {state})")
