"""积分存储生命周期测试

覆盖 create → 写入 → close → open → 读取 → close 的完整流程，以及冲突、
形状不一致、中途失败后的句柄清理等异常路径。
"""

import logging

import h5py
import numpy as np
import pytest

import intgstore.store as store_module
from intgstore import (
    HandleReleaseError,
    IntegralConfig,
    IntegralKind,
    IntegralStore,
    LayoutPolicy,
    MatrixShape,
    NamespaceConflict,
    NamespaceMissing,
    ShapeMismatch,
    SlotAddress,
    StoreClosedError,
    StoreIOError,
    scan_namespace,
)

OPEN_OBJECTS = h5py.h5f.OBJ_DATASET | h5py.h5f.OBJ_GROUP


def _open_objects(f: h5py.File) -> int:
    """文件中当前打开的组与数据集句柄数。"""
    return h5py.h5f.get_obj_count(f.id, OPEN_OBJECTS)


def _payload(address: SlotAddress, dims) -> np.ndarray:
    """每个槽位一个可区分的确定性数组。"""
    kind_code = list(IntegralKind).index(address.kind)
    base = 1000.0 * address.kpoint + 100.0 * kind_code + 10.0 * (address.term or 0)
    return base + np.arange(np.prod(dims), dtype=np.float64).reshape(dims) / 7.0


@pytest.fixture
def h5file(tmp_path):
    f = h5py.File(tmp_path / "setup.hdf5", "w")
    yield f
    f.close()


@pytest.mark.store
@pytest.mark.quick
def test_round_trip_real_only(tmp_path):
    path = tmp_path / "setup.hdf5"
    cfg = IntegralConfig(n_basis=4, num_kpoints=3, pot_dim=2, gamma=True)

    store = IntegralStore.create(path, cfg)
    assert store.shape == MatrixShape(1, 10)
    written = {}
    for address in store.addresses():
        data = _payload(address, store.shape.dims)
        store.write_packed(address.kind, address.kpoint, address.term, data)
        written[address] = data
    store.close()
    assert len(written) == 15

    with IntegralStore.open(path, cfg) as reader:
        for address, data in written.items():
            got = reader.read_packed(address.kind, address.kpoint, address.term)
            np.testing.assert_array_equal(got, data)
    assert reader.closed


@pytest.mark.store
def test_round_trip_complex_full_matrices(h5file):
    cfg = IntegralConfig(n_basis=3, num_kpoints=2, pot_dim=1, gamma=False)
    rng = np.random.default_rng(11)
    matrices = {}
    with IntegralStore.create(h5file, cfg) as store:
        for address in store.addresses():
            a = rng.normal(size=(3, 3)) + 1j * rng.normal(size=(3, 3))
            h = a + a.conj().T
            store.write_matrix(address.kind, address.kpoint, address.term, h)
            matrices[address] = h

    with IntegralStore.open(h5file, cfg) as store:
        assert store.slot(IntegralKind.NUCLEAR, 2).shape == (2, 6)
        for address, h in matrices.items():
            np.testing.assert_array_equal(
                store.read_matrix(address.kind, address.kpoint, address.term), h)


@pytest.mark.store
@pytest.mark.parametrize("num_kpoints", [1, 5])
@pytest.mark.parametrize("pot_dim", [1, 4])
def test_open_reproduces_created_topology(h5file, num_kpoints, pot_dim):
    cfg = IntegralConfig(n_basis=2, num_kpoints=num_kpoints, pot_dim=pot_dim, gamma=True)
    with IntegralStore.create(h5file, cfg) as store:
        created = set(store.addresses())
    assert len(created) == num_kpoints * (3 + pot_dim)

    with IntegralStore.open(h5file, cfg) as store:
        opened = set(store.addresses())
    assert opened == created
    assert scan_namespace(h5file) == created


@pytest.mark.store
@pytest.mark.quick
def test_create_on_existing_namespace_conflicts(h5file):
    cfg = IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1, gamma=True)
    with IntegralStore.create(h5file, cfg) as store:
        store.write_packed("overlap", 1, None, [[1.0, 2.0, 3.0]])

    baseline = _open_objects(h5file)
    with pytest.raises(NamespaceConflict):
        IntegralStore.create(h5file, cfg)
    assert _open_objects(h5file) == baseline

    # 已有数据不受影响
    with IntegralStore.open(h5file, cfg) as store:
        np.testing.assert_array_equal(store.read_packed("overlap", 1), [[1.0, 2.0, 3.0]])


@pytest.mark.store
@pytest.mark.quick
def test_create_conflict_on_path_closes_owned_file(tmp_path):
    path = tmp_path / "setup.hdf5"
    cfg = IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1, gamma=True)
    IntegralStore.create(path, cfg).close()
    with pytest.raises(NamespaceConflict):
        IntegralStore.create(path, cfg)
    # 文件已被释放，可以再次以写模式打开
    with h5py.File(path, "r+") as f:
        assert "atomIntgGroup" in f


@pytest.mark.store
@pytest.mark.quick
def test_open_with_different_basis_count_is_shape_mismatch(h5file):
    IntegralStore.create(h5file, IntegralConfig(n_basis=4, num_kpoints=2, pot_dim=2, gamma=True)).close()
    baseline = _open_objects(h5file)
    with pytest.raises(ShapeMismatch):
        IntegralStore.open(h5file, IntegralConfig(n_basis=6, num_kpoints=2, pot_dim=2, gamma=True))
    assert _open_objects(h5file) == baseline


@pytest.mark.store
def test_open_with_different_run_mode_is_shape_mismatch(h5file):
    IntegralStore.create(h5file, IntegralConfig(n_basis=4, num_kpoints=1, pot_dim=1, gamma=True)).close()
    with pytest.raises(ShapeMismatch):
        IntegralStore.open(h5file, IntegralConfig(n_basis=4, num_kpoints=1, pot_dim=1, gamma=False))


@pytest.mark.store
def test_open_with_missing_member(h5file):
    cfg = IntegralConfig(n_basis=3, num_kpoints=2, pot_dim=3, gamma=True)
    IntegralStore.create(h5file, cfg).close()
    del h5file["atomIntgGroup/atomPotOverlap/0000002/0000003"]
    baseline = _open_objects(h5file)
    with pytest.raises(NamespaceMissing, match="0000002/0000003"):
        IntegralStore.open(h5file, cfg)
    assert _open_objects(h5file) == baseline

    # 运行配置要求更多 k 点时同样缺失
    with pytest.raises(NamespaceMissing):
        IntegralStore.open(h5file, IntegralConfig(n_basis=3, num_kpoints=3, pot_dim=1, gamma=True))


@pytest.mark.store
def test_open_without_root(h5file):
    with pytest.raises(NamespaceMissing):
        IntegralStore.open(h5file, IntegralConfig(n_basis=3, num_kpoints=1, pot_dim=1))


@pytest.mark.store
@pytest.mark.quick
def test_failed_create_releases_acquired_handles(h5file, monkeypatch):
    """在第 1 个 k 点的第 2 个势函数项处注入失败。"""
    target = SlotAddress(IntegralKind.POTENTIAL, 1, 2)
    groups, datasets = [], []
    create_group = IntegralStore._create_group
    create_dataset = IntegralStore._create_dataset

    def record_group(self, parent, key):
        g = create_group(self, parent, key)
        groups.append(g)
        return g

    def failing_dataset(self, parent, address):
        if address == target:
            raise StoreIOError("injected failure")
        ds = create_dataset(self, parent, address)
        datasets.append(ds)
        return ds

    monkeypatch.setattr(IntegralStore, "_create_group", record_group)
    monkeypatch.setattr(IntegralStore, "_create_dataset", failing_dataset)

    baseline = _open_objects(h5file)
    cfg = IntegralConfig(n_basis=4, num_kpoints=2, pot_dim=3, gamma=True)
    with pytest.raises(StoreIOError, match="injected failure"):
        IntegralStore.create(h5file, cfg)

    # 根组 + 4 个种类子组 + 2 个 k 点子组；失败前已建 3 个普通槽位 + 1 个势函数槽位
    assert len(groups) == 7
    assert len(datasets) == 4
    assert not any(g.id.valid for g in groups)
    assert not any(ds.id.valid for ds in datasets)
    assert _open_objects(h5file) == baseline


@pytest.mark.store
def test_hdf5_failure_is_wrapped(h5file, monkeypatch):
    def broken_create(*args, **kwargs):
        raise ValueError("disk full")

    monkeypatch.setattr(h5py.h5d, "create", broken_create)
    with pytest.raises(StoreIOError) as excinfo:
        IntegralStore.create(h5file, IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1))
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert isinstance(excinfo.value, OSError)


@pytest.mark.store
def test_shape_and_layout_shared_by_all_slots(h5file):
    cfg = IntegralConfig(n_basis=5, num_kpoints=2, pot_dim=2, gamma=False)
    IntegralStore.create(h5file, cfg).close()
    with IntegralStore.open(h5file, cfg) as store:
        a = store.slot(IntegralKind.OVERLAP, 1).id
        b = store.slot(IntegralKind.POTENTIAL, 2, 2).id
        assert MatrixShape.from_space(a.get_space()) == MatrixShape.from_space(b.get_space()) == store.shape
        assert (LayoutPolicy.from_plist(a.get_create_plist())
                == LayoutPolicy.from_plist(b.get_create_plist())
                == store.layout)
        assert store.layout.chunks == store.shape.dims


@pytest.mark.store
@pytest.mark.quick
def test_closed_store_rejects_access(h5file):
    cfg = IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1)
    store = IntegralStore.create(h5file, cfg)
    ds = store.slot(IntegralKind.KINETIC, 1)
    store.close()
    assert not ds.id.valid
    with pytest.raises(StoreClosedError):
        store.slot(IntegralKind.KINETIC, 1)
    with pytest.raises(StoreClosedError):
        store.read_packed(IntegralKind.KINETIC, 1)
    with pytest.raises(StoreClosedError):
        store.close()


@pytest.mark.store
def test_slot_address_errors(h5file):
    cfg = IntegralConfig(n_basis=2, num_kpoints=2, pot_dim=2)
    with IntegralStore.create(h5file, cfg) as store:
        with pytest.raises(NamespaceMissing):
            store.slot(IntegralKind.OVERLAP, 3)
        with pytest.raises(NamespaceMissing):
            store.slot(IntegralKind.POTENTIAL, 1)
        with pytest.raises(KeyError):
            store.slot(IntegralKind.POTENTIAL, 1, 3)
        with pytest.raises(ShapeMismatch):
            store.write_packed(IntegralKind.OVERLAP, 1, None, np.zeros((1, 3)))


@pytest.mark.store
def test_release_failures_are_collected_and_drain_continues(h5file, monkeypatch):
    cfg = IntegralConfig(n_basis=2, num_kpoints=2, pot_dim=1)
    baseline = _open_objects(h5file)
    store = IntegralStore.create(h5file, cfg)
    datasets = [store.slot(a.kind, a.kpoint, a.term) for a in store.addresses()]
    release = store_module._release

    def flaky_release(oid):
        if isinstance(oid, h5py.h5s.SpaceID):
            raise RuntimeError("cannot close dataspace")
        release(oid)

    monkeypatch.setattr(store_module, "_release", flaky_release)
    with pytest.raises(HandleReleaseError) as excinfo:
        store.close()
    assert [label for label, _ in excinfo.value.failures] == ["dataspace"]
    # dataspace 之后的组以及之前的数据集都已释放
    assert not any(ds.id.valid for ds in datasets)
    assert _open_objects(h5file) == baseline
    assert store.closed


@pytest.mark.store
def test_read_only_store_rejects_writes(tmp_path):
    path = tmp_path / "setup.hdf5"
    cfg = IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1, gamma=True)
    IntegralStore.create(path, cfg).close()

    with IntegralStore.open(path, cfg) as store:
        assert not store.writable
        with pytest.raises(StoreIOError):
            store.write_packed(IntegralKind.OVERLAP, 1, None, np.ones((1, 3)))

    with IntegralStore.open(path, cfg, writable=True) as store:
        store.write_packed(IntegralKind.OVERLAP, 1, None, np.ones((1, 3)))
        np.testing.assert_array_equal(store.read_packed(IntegralKind.OVERLAP, 1), np.ones((1, 3)))


@pytest.mark.store
def test_on_disk_layout_matches_setup_file(h5file):
    cfg = IntegralConfig(n_basis=3, num_kpoints=1, pot_dim=2, gamma=False)
    IntegralStore.create(h5file, cfg).close()
    ds = h5file["/atomIntgGroup/atomPotOverlap/0000001/0000002"]
    assert ds.shape == (2, 6)
    assert ds.dtype == np.float64
    assert ds.chunks == (2, 6)
    assert ds.compression == "gzip"
    assert ds.compression_opts == 1
    assert isinstance(h5file["/atomIntgGroup/atomKEOverlap/0000001"], h5py.Dataset)


@pytest.mark.store
def test_cleanup_failure_does_not_mask_create_error(h5file, monkeypatch, caplog):
    """创建中途失败且清理时 dataspace 释放也失败：仍抛出原始错误，释放失败写入日志。"""
    target = SlotAddress(IntegralKind.NUCLEAR, 1)
    create_dataset = IntegralStore._create_dataset
    release = store_module._release

    def failing_dataset(self, parent, address):
        if address == target:
            raise StoreIOError("injected failure")
        return create_dataset(self, parent, address)

    def flaky_release(oid):
        if isinstance(oid, h5py.h5s.SpaceID):
            raise RuntimeError("cannot close dataspace")
        release(oid)

    monkeypatch.setattr(IntegralStore, "_create_dataset", failing_dataset)
    monkeypatch.setattr(store_module, "_release", flaky_release)

    baseline = _open_objects(h5file)
    with caplog.at_level(logging.ERROR, logger="intgstore.store"):
        with pytest.raises(StoreIOError, match="injected failure") as excinfo:
            IntegralStore.create(h5file, IntegralConfig(n_basis=3, num_kpoints=1, pot_dim=1))
    assert not isinstance(excinfo.value, HandleReleaseError)
    messages = [r.getMessage() for r in caplog.records]
    assert any("dataspace" in m and "cannot close dataspace" in m for m in messages)
    # 其余组与数据集句柄照常释放
    assert _open_objects(h5file) == baseline


@pytest.mark.store
@pytest.mark.quick
def test_numpy_integer_indices(h5file):
    cfg = IntegralConfig(n_basis=np.int64(2), num_kpoints=np.int32(2), pot_dim=np.int64(2), gamma=True)
    assert type(cfg.n_basis) is int and cfg.num_kpoints == 2
    with IntegralStore.create(h5file, cfg) as store:
        for k in np.arange(1, 3):
            store.write_packed(IntegralKind.OVERLAP, k, None, np.full((1, 3), float(k)))
            for j in np.arange(1, 3):
                assert store.slot(IntegralKind.POTENTIAL, k, j).name.endswith(f"{k:07d}/{j:07d}")
        np.testing.assert_array_equal(store.read_packed(IntegralKind.OVERLAP, np.int64(2)),
                                      np.full((1, 3), 2.0))


@pytest.mark.store
@pytest.mark.quick
def test_logical_kind_names(h5file):
    cfg = IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1, gamma=True)
    with IntegralStore.create(h5file, cfg) as store:
        assert store.slot("PlainOverlap", 1) is store.slot(IntegralKind.OVERLAP, 1)
        assert store.slot("KineticEnergyOverlap", 1) is store.slot("atomKEOverlap", 1)
        assert store.slot("NuclearOverlap", 1) is store.slot("nuclear", 1)
        assert store.slot("PotentialOverlap", 1, 1) is store.slot(IntegralKind.POTENTIAL, 1, 1)


@pytest.mark.store
def test_open_on_writable_group_is_read_only_by_default(h5file):
    cfg = IntegralConfig(n_basis=2, num_kpoints=1, pot_dim=1, gamma=True)
    IntegralStore.create(h5file, cfg).close()
    # h5file 以 "w" 打开，但下游阶段默认不得修改已写入的积分
    with IntegralStore.open(h5file, cfg) as store:
        assert not store.writable
        with pytest.raises(StoreIOError):
            store.write_packed(IntegralKind.OVERLAP, 1, None, np.ones((1, 3)))
    with IntegralStore.open(h5file, cfg, writable=True) as store:
        assert store.writable
