r"""积分容器的命名空间拓扑。

容器布局（与 setup 程序写出的文件一致）::

    /atomIntgGroup
      /atomOverlap/{kpoint}             -> float64[component_axis, packed_length]
      /atomKEOverlap/{kpoint}           -> float64[component_axis, packed_length]
      /atomNucOverlap/{kpoint}          -> float64[component_axis, packed_length]
      /atomPotOverlap/{kpoint}/{term}   -> float64[component_axis, packed_length]

其中 ``{kpoint}`` 与 ``{term}`` 为 7 位零填充的十进制序号（从 1 开始）。

:class:`Topology` 是这一布局的唯一声明式描述：创建与打开两条路径都只遍历它
给出的组序列与槽位序列，因而二者得到的句柄图必然同构。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator

import h5py

from .dims import as_index
from .errors import ConfigurationError, NamespaceMissing

__all__ = [
    "ROOT_GROUP",
    "INDEX_WIDTH",
    "MAX_INDEX",
    "IntegralKind",
    "SlotAddress",
    "Topology",
    "index_name",
    "resolve_kind",
    "scan_namespace",
]

ROOT_GROUP = "atomIntgGroup"
INDEX_WIDTH = 7
MAX_INDEX = 10**INDEX_WIDTH - 1


class IntegralKind(Enum):
    """积分种类；枚举值即磁盘上的子组名。"""

    OVERLAP = "atomOverlap"
    KINETIC = "atomKEOverlap"
    NUCLEAR = "atomNucOverlap"
    POTENTIAL = "atomPotOverlap"

    @property
    def per_term(self) -> bool:
        """是否额外按势函数项编号。"""
        return self is IntegralKind.POTENTIAL


# 每个 k 点内的写入顺序；POTENTIAL 之后再按势函数项展开
_KPOINT_KINDS = (IntegralKind.OVERLAP, IntegralKind.KINETIC, IntegralKind.NUCLEAR)


def index_name(index: int) -> str:
    """序号 -> 7 位零填充名称，例如 ``3 -> "0000003"``。"""
    value = as_index(index)
    if value is None or not (1 <= value <= MAX_INDEX):
        raise ConfigurationError(f"序号必须位于 [1, {MAX_INDEX}]，得到 {index!r}")
    return f"{value:0{INDEX_WIDTH}d}"


def _parse_index(name: str) -> int | None:
    if len(name) != INDEX_WIDTH or not name.isdigit():
        return None
    value = int(name)
    return value if value >= 1 else None


@dataclass(frozen=True)
class SlotAddress:
    r"""矩阵槽位地址 ``(kind, kpoint[, term])``。

    ``term`` 仅对 :attr:`IntegralKind.POTENTIAL` 有效，其余种类必须为 ``None``。
    """

    kind: IntegralKind
    kpoint: int
    term: int | None = None

    @property
    def parts(self) -> tuple[str, ...]:
        base = (ROOT_GROUP, self.kind.value, index_name(self.kpoint))
        if self.term is None:
            return base
        return base + (index_name(self.term),)

    @property
    def parent(self) -> tuple[str, ...]:
        return self.parts[:-1]

    @property
    def path(self) -> str:
        return "/" + "/".join(self.parts)

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class Topology:
    r"""由 k 点数与势函数项数决定的完整命名空间。

    Attributes
    ----------
    num_kpoints : int
        k 点个数，序号范围 ``[1, num_kpoints]``。
    pot_dim : int
        势函数项数，序号范围 ``[1, pot_dim]``。
    """

    num_kpoints: int
    pot_dim: int

    def __post_init__(self):
        for name in ("num_kpoints", "pot_dim"):
            value = getattr(self, name)
            count = as_index(value)
            if count is None or not (1 <= count <= MAX_INDEX):
                raise ConfigurationError(f"{name} 必须位于 [1, {MAX_INDEX}]，得到 {value!r}")
            object.__setattr__(self, name, count)

    @classmethod
    def from_config(cls, config) -> "Topology":
        return cls(num_kpoints=config.num_kpoints, pot_dim=config.pot_dim)

    def groups(self) -> list[tuple[str, ...]]:
        """按获取顺序列出全部组（以名称元组表示路径）。"""
        out = [(ROOT_GROUP,)]
        out.extend((ROOT_GROUP, kind.value) for kind in IntegralKind)
        pot = (ROOT_GROUP, IntegralKind.POTENTIAL.value)
        out.extend(pot + (index_name(i),) for i in range(1, self.num_kpoints + 1))
        return out

    def group_release_order(self) -> list[tuple[str, ...]]:
        """组的释放顺序：k 点子组，种类子组，最后根组。"""
        return sorted(self.groups(), key=len, reverse=True)

    def slots(self) -> Iterator[SlotAddress]:
        """按 k 点外层、势函数项内层的顺序遍历全部槽位。"""
        for i in range(1, self.num_kpoints + 1):
            for kind in _KPOINT_KINDS:
                yield SlotAddress(kind, i)
            for j in range(1, self.pot_dim + 1):
                yield SlotAddress(IntegralKind.POTENTIAL, i, j)

    @property
    def num_slots(self) -> int:
        return self.num_kpoints * (len(_KPOINT_KINDS) + self.pot_dim)

    def address(self, kind: IntegralKind | str, kpoint: int, term: int | None = None) -> SlotAddress:
        """构造并校验槽位地址；越界或 term 用法错误时抛出 :class:`NamespaceMissing`。

        ``kind`` 的字符串形式见 :func:`resolve_kind`；``kpoint``/``term``
        接受 Python 或 numpy 整数。
        """
        kind = resolve_kind(kind)
        k = as_index(kpoint)
        if k is None or not (1 <= k <= self.num_kpoints):
            raise NamespaceMissing(f"k 点序号 {kpoint!r} 超出 [1, {self.num_kpoints}]")
        if kind.per_term:
            j = as_index(term)
            if j is None or not (1 <= j <= self.pot_dim):
                raise NamespaceMissing(f"势函数项序号 {term!r} 超出 [1, {self.pot_dim}]")
            return SlotAddress(kind, k, j)
        if term is not None:
            raise NamespaceMissing(f"{kind.name} 不按势函数项编号，不应给出 term={term!r}")
        return SlotAddress(kind, k)


_KIND_ALIASES = {
    "plainoverlap": IntegralKind.OVERLAP,
    "kineticenergyoverlap": IntegralKind.KINETIC,
    "nuclearoverlap": IntegralKind.NUCLEAR,
    "potentialoverlap": IntegralKind.POTENTIAL,
}


def resolve_kind(kind: IntegralKind | str) -> IntegralKind:
    r"""将积分种类的字符串形式解析为 :class:`IntegralKind`。

    接受（字符串均不区分大小写）：

    - 枚举成员本身；
    - 成员名：``"overlap"``、``"kinetic"``、``"nuclear"``、``"potential"``；
    - 磁盘子组名：``"atomOverlap"``、``"atomKEOverlap"``、``"atomNucOverlap"``、``"atomPotOverlap"``；
    - 逻辑名：``"PlainOverlap"``、``"KineticEnergyOverlap"``、``"NuclearOverlap"``、``"PotentialOverlap"``。
    """
    if isinstance(kind, IntegralKind):
        return kind
    key = str(kind).lower()
    for member in IntegralKind:
        if key in (member.name.lower(), member.value.lower()):
            return member
    if key in _KIND_ALIASES:
        return _KIND_ALIASES[key]
    raise NamespaceMissing(f"未知积分种类 {kind!r}")


def scan_namespace(container: h5py.Group) -> frozenset[SlotAddress]:
    r"""遍历已有容器，返回磁盘上实际存在的全部槽位地址。

    该函数不依赖运行配置，只认命名规则：名称不是 7 位序号的成员会被忽略。

    Parameters
    ----------
    container : h5py.Group
        包含 ``/atomIntgGroup`` 的文件或组。

    Returns
    -------
    frozenset[SlotAddress]
        可达槽位集合。
    """
    if ROOT_GROUP not in container:
        raise NamespaceMissing(f"容器中不存在 /{ROOT_GROUP}")
    root = container[ROOT_GROUP]
    found = set()
    for kind in IntegralKind:
        if kind.value not in root:
            continue
        group = root[kind.value]
        for name, member in group.items():
            kpoint = _parse_index(name)
            if kpoint is None:
                continue
            if not kind.per_term:
                if isinstance(member, h5py.Dataset):
                    found.add(SlotAddress(kind, kpoint))
                continue
            if not isinstance(member, h5py.Group):
                continue
            for term_name, term_member in member.items():
                term = _parse_index(term_name)
                if term is not None and isinstance(term_member, h5py.Dataset):
                    found.add(SlotAddress(kind, kpoint, term))
    return frozenset(found)
