#!/usr/bin/env python3
"""
刷流数据模型

- 客户端状态 / 客户端种子 / 站点种子
- 刷流选项（站点侧、客户端侧）
- 决策结果（删除、暂停下载、恢复、修改、添加）
- 种子 Meta 的类型化视图与名称编码（name__meta.k_v.k_v）
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple


# ════════════════════════════════════════════════════════════════════════════════
# 种子 Meta
# ════════════════════════════════════════════════════════════════════════════════
META_DISCOUNT_END_TIME = "dcet"
META_SLOW_CHECK_TIME = "sct"
META_SLOW_CHECK_UPLOADED = "sctu"
META_STALL_TIME = "stt"

_META_FIELDS = {
    META_DISCOUNT_END_TIME: "discount_end_time",
    META_SLOW_CHECK_TIME: "slow_check_time",
    META_SLOW_CHECK_UPLOADED: "slow_check_uploaded",
    META_STALL_TIME: "stall_time",
}

_META_NAME_RE = re.compile(r'^(?P<name>.*?)__meta\.(?P<meta>[._a-zA-Z0-9]+)$')


@dataclass(frozen=True)
class TorrentMeta:
    """Meta 的类型化视图，缺省值均为 0；未知 key 原样保存在 extra 中"""
    discount_end_time: int = 0
    slow_check_time: int = 0
    slow_check_uploaded: int = 0
    stall_time: int = 0
    extra: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, int]]) -> "TorrentMeta":
        if not data:
            return cls()
        kwargs = {}
        extra = {}
        for key, value in data.items():
            if key in _META_FIELDS:
                kwargs[_META_FIELDS[key]] = int(value or 0)
            else:
                extra[key] = int(value or 0)
        return cls(extra=extra, **kwargs)

    def to_dict(self) -> Dict[str, int]:
        """返回新的 dict（值为 0 的字段不输出）"""
        data = {k: v for k, v in self.extra.items() if v != 0}
        for key, attr in _META_FIELDS.items():
            value = getattr(self, attr)
            if value != 0:
                data[key] = value
        return data

    def replace(self, **changes) -> "TorrentMeta":
        return replace(self, **changes)


def generate_name_with_meta(name: str, meta: Optional[Dict[str, int]]) -> str:
    """把 Meta 编码进种子名称: name__meta.k1_v1.k2_v2"""
    parts = [f"{k}_{v}" for k, v in (meta or {}).items() if v != 0]
    if not parts:
        return name
    return f"{name}__meta." + ".".join(parts)


def parse_meta_from_name(fullname: str) -> Tuple[str, Dict[str, int]]:
    """从种子名称解析 Meta，返回 (原始名称, meta)"""
    match = _META_NAME_RE.match(fullname or "")
    if not match:
        return fullname, {}
    meta: Dict[str, int] = {}
    for part in match.group("meta").split("."):
        kvs = part.split("_")
        if len(kvs) < 2:
            continue
        try:
            value = int(kvs[1])
        except ValueError:
            continue
        if value != 0:
            meta[kvs[0]] = value
    return match.group("name"), meta


# ════════════════════════════════════════════════════════════════════════════════
# 客户端 / 站点
# ════════════════════════════════════════════════════════════════════════════════
@dataclass
class ClientStatus:
    """客户端状态快照（字节 / 字节每秒）"""
    free_space_on_disk: int = -1  # -1 表示未知
    upload_speed: int = 0
    upload_speed_limit: int = 0  # <= 0 表示不限速
    download_speed: int = 0
    download_speed_limit: int = 0


@dataclass
class ClientTorrent:
    """客户端中的种子"""
    info_hash: str
    name: str = ""
    state: str = "downloading"  # seeding|downloading|completed|paused|checking|error|unknown
    size: int = 0
    size_completed: int = 0
    upload_speed: int = 0
    download_speed: int = 0
    uploaded: int = 0
    downloaded: int = 0
    atime: int = 0  # 添加时间
    ctime: int = 0  # 完成时间，<= 0 表示未完成
    download_speed_limit: int = -1
    category: str = ""
    tags: List[str] = field(default_factory=list)
    meta: Dict[str, int] = field(default_factory=dict)

    @property
    def meta_view(self) -> TorrentMeta:
        return TorrentMeta.from_dict(self.meta)

    def is_complete(self) -> bool:
        return self.size_completed == self.size

    def get_meta_from_tag(self, name: str) -> str:
        prefix = name + ":"
        for tag in self.tags:
            if tag.startswith(prefix):
                return tag[len(prefix):]
        return ""

    def get_site_from_tag(self) -> str:
        return self.get_meta_from_tag("site")


@dataclass
class SiteTorrent:
    """站点列表中的候选种子"""
    name: str
    size: int = 0
    seeders: int = 0
    leechers: int = 0
    download_url: str = ""
    description: str = ""
    info_hash: str = ""
    is_active: bool = False  # 曾经下载 / 做种过
    has_hnr: bool = False
    upload_multiplier: float = 1.0
    download_multiplier: float = 1.0  # 0 表示免费
    discount_end_time: int = 0
    paid: bool = False
    bought: bool = False
    time: int = 0  # 发布时间

    def match_filter(self, keyword: str) -> bool:
        if not keyword:
            return True
        keyword = keyword.lower()
        return keyword in self.name.lower() or keyword in self.description.lower()

    def match_filters_or(self, filters: List[str]) -> bool:
        return any(self.match_filter(f) for f in filters or [])


def generate_torrent_tag_from_site(site: str) -> str:
    return "site:" + site


# ════════════════════════════════════════════════════════════════════════════════
# 刷流选项
# ════════════════════════════════════════════════════════════════════════════════
@dataclass
class BrushSiteOption:
    allow_none_free: bool = False
    allow_paid: bool = False
    allow_hr: bool = False
    allow_zero_seeders: bool = False
    torrent_upload_speed_limit: int = 10 * 1024 * 1024
    torrent_min_size_limit: int = 0
    torrent_max_size_limit: int = 1024 ** 5
    now: int = 0
    excludes: List[str] = field(default_factory=list)


@dataclass
class BrushClientOption:
    min_disk_space: int = 5 * 1024 ** 3
    slow_upload_speed_tier: int = 100 * 1024
    max_downloading_torrents: int = 6
    max_torrents: int = 9999
    min_ratio: float = 0.2
    default_upload_speed_limit: int = 10 * 1024 * 1024


# ════════════════════════════════════════════════════════════════════════════════
# 决策结果
# ════════════════════════════════════════════════════════════════════════════════
@dataclass
class AlgorithmOperationTorrent:
    info_hash: str
    name: str
    msg: str = ""


@dataclass
class AlgorithmModifyTorrent:
    info_hash: str
    name: str
    meta: Dict[str, int] = field(default_factory=dict)
    msg: str = ""


@dataclass
class AlgorithmAddTorrent:
    download_url: str
    name: str
    meta: Dict[str, int] = field(default_factory=dict)
    msg: str = ""


@dataclass
class AlgorithmResult:
    delete_torrents: List[AlgorithmOperationTorrent] = field(default_factory=list)  # 从客户端删除
    stall_torrents: List[AlgorithmModifyTorrent] = field(default_factory=list)  # 停止下载但继续上传
    resume_torrents: List[AlgorithmOperationTorrent] = field(default_factory=list)  # 恢复出错的种子
    modify_torrents: List[AlgorithmModifyTorrent] = field(default_factory=list)  # 仅修改 meta
    add_torrents: List[AlgorithmAddTorrent] = field(default_factory=list)  # 新添加
    can_add_more: bool = False
    free_space_change: int = 0  # 执行上述操作后的剩余空间变化估计
    msg: str = ""

    def summary(self) -> str:
        return (f"add/modify/stall/resume/delete: {len(self.add_torrents)}/{len(self.modify_torrents)}/"
                f"{len(self.stall_torrents)}/{len(self.resume_torrents)}/{len(self.delete_torrents)}")
