#!/usr/bin/env python3
"""
刷流配置模块

- 读取 YAML 配置文件（clients / sites 两部分，key 使用驼峰命名）
- 大小 / 速度字段支持 "5GiB"、"100KiB"、"10M" 等写法
- 解析失败的大小字段回退到默认值并记录警告
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s: %(message)s'


class ConfigError(ValueError):
    """配置文件无效"""


class ConfigDefaults:
    CLIENT_BRUSH_MIN_DISK_SPACE = 5 * 1024 ** 3
    CLIENT_BRUSH_SLOW_UPLOAD_SPEED_TIER = 100 * 1024
    CLIENT_BRUSH_MAX_DOWNLOADING_TORRENTS = 6
    CLIENT_BRUSH_MAX_TORRENTS = 9999
    CLIENT_BRUSH_MIN_RATIO = 0.2
    CLIENT_BRUSH_DEFAULT_UPLOAD_SPEED_LIMIT = 10 * 1024 ** 2
    SITE_TORRENT_UPLOAD_SPEED_LIMIT = 10 * 1024 ** 2
    SITE_BRUSH_TORRENT_MIN_SIZE_LIMIT = 0
    SITE_BRUSH_TORRENT_MAX_SIZE_LIMIT = 1024 ** 5  # 1PiB，相当于不限制


# ════════════════════════════════════════════════════════════════════════════════
# 大小解析与格式化
# ════════════════════════════════════════════════════════════════════════════════
_SIZE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([kmgtp])?(i)?(b)?\s*$', re.IGNORECASE)
_SIZE_UNITS = {'': 1, 'k': 1024, 'm': 1024 ** 2, 'g': 1024 ** 3, 't': 1024 ** 4, 'p': 1024 ** 5}


def parse_size(value: Any) -> int:
    """
    解析人类可读的大小（二进制单位，大小写不敏感，B 后缀可省略）

    "-1" 返回 -1；数字原样返回；无法解析时抛出 ValueError
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text == '-1':
        return -1
    match = _SIZE_RE.match(text)
    if not match:
        raise ValueError(f"invalid size: {value!r}")
    number, unit, binary, _ = match.groups()
    if binary and not unit:
        raise ValueError(f"invalid size: {value!r}")
    return int(float(number) * _SIZE_UNITS[(unit or '').lower()])


def fmt_size(b: float) -> str:
    """格式化大小"""
    if b is None:
        return "未知"
    if b < 0:
        return "-"
    for u in ['B', 'KiB', 'MiB', 'GiB', 'TiB']:
        if abs(b) < 1024:
            return f"{b:.1f} {u}"
        b /= 1024
    return f"{b:.1f} PiB"


def fmt_duration(seconds: float) -> str:
    """格式化时长"""
    if seconds is None or seconds < 0:
        return "未知"
    if seconds < 60:
        return f"{int(seconds)}秒"
    if seconds < 3600:
        return f"{int(seconds // 60)}分{int(seconds % 60)}秒"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}时{minutes}分"


def fmt_speed(b: float) -> str:
    """格式化速度"""
    if b == 0:
        return "0 B/s"
    for u in ['B/s', 'KiB/s', 'MiB/s', 'GiB/s']:
        if abs(b) < 1024:
            return f"{b:.1f} {u}"
        b /= 1024
    return f"{b:.1f} TiB/s"


def _size_field(data: Dict[str, Any], key: str, default: int, owner: str) -> int:
    value = data.get(key)
    if value is None or value == '':
        return default
    try:
        return parse_size(value)
    except ValueError:
        logger.warning(f"{owner}: {key}={value!r} 无法解析，使用默认值 {fmt_size(default)}")
        return default


def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
    try:
        value = int(data.get(key) or 0)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} 必须是整数: {data.get(key)!r}")
    return value if value > 0 else default


def _str_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [x.strip() for x in value.split(',') if x.strip()]
    return [str(x) for x in value]


# ════════════════════════════════════════════════════════════════════════════════
# 客户端 / 站点配置
# ════════════════════════════════════════════════════════════════════════════════
@dataclass
class ClientConfig:
    name: str
    type: str = "qbittorrent"
    url: str = ""
    disabled: bool = False
    brush_min_disk_space: int = ConfigDefaults.CLIENT_BRUSH_MIN_DISK_SPACE
    brush_slow_upload_speed_tier: int = ConfigDefaults.CLIENT_BRUSH_SLOW_UPLOAD_SPEED_TIER
    brush_max_downloading_torrents: int = ConfigDefaults.CLIENT_BRUSH_MAX_DOWNLOADING_TORRENTS
    brush_max_torrents: int = ConfigDefaults.CLIENT_BRUSH_MAX_TORRENTS
    brush_min_ratio: float = ConfigDefaults.CLIENT_BRUSH_MIN_RATIO
    brush_default_upload_speed_limit: int = ConfigDefaults.CLIENT_BRUSH_DEFAULT_UPLOAD_SPEED_LIMIT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientConfig":
        name = str(data.get('name') or '').strip()
        if not name:
            raise ConfigError("客户端缺少 name")
        owner = f"client {name}"
        try:
            min_ratio = float(data.get('brushMinRatio') or 0)
        except (TypeError, ValueError):
            raise ConfigError(f"{owner}: brushMinRatio 必须是数字: {data.get('brushMinRatio')!r}")
        return cls(
            name=name,
            type=str(data.get('type') or 'qbittorrent'),
            url=str(data.get('url') or ''),
            disabled=bool(data.get('disabled', False)),
            brush_min_disk_space=_size_field(
                data, 'brushMinDiskSpace', ConfigDefaults.CLIENT_BRUSH_MIN_DISK_SPACE, owner),
            brush_slow_upload_speed_tier=_size_field(
                data, 'brushSlowUploadSpeedTier', ConfigDefaults.CLIENT_BRUSH_SLOW_UPLOAD_SPEED_TIER, owner),
            brush_max_downloading_torrents=_positive_int(
                data, 'brushMaxDownloadingTorrents', ConfigDefaults.CLIENT_BRUSH_MAX_DOWNLOADING_TORRENTS),
            brush_max_torrents=_positive_int(
                data, 'brushMaxTorrents', ConfigDefaults.CLIENT_BRUSH_MAX_TORRENTS),
            brush_min_ratio=min_ratio if min_ratio > 0 else ConfigDefaults.CLIENT_BRUSH_MIN_RATIO,
            brush_default_upload_speed_limit=_size_field(
                data, 'brushDefaultUploadSpeedLimit', ConfigDefaults.CLIENT_BRUSH_DEFAULT_UPLOAD_SPEED_LIMIT, owner),
        )


@dataclass
class SiteConfig:
    name: str
    type: str = "nexusphp"
    url: str = ""
    disabled: bool = False
    torrent_upload_speed_limit: int = ConfigDefaults.SITE_TORRENT_UPLOAD_SPEED_LIMIT
    brush_torrent_min_size_limit: int = ConfigDefaults.SITE_BRUSH_TORRENT_MIN_SIZE_LIMIT
    brush_torrent_max_size_limit: int = ConfigDefaults.SITE_BRUSH_TORRENT_MAX_SIZE_LIMIT
    brush_allow_none_free: bool = False
    brush_allow_paid: bool = False
    brush_allow_hr: bool = False
    brush_allow_zero_seeders: bool = False
    brush_excludes: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SiteConfig":
        name = str(data.get('name') or '').strip()
        if not name:
            raise ConfigError("站点缺少 name")
        owner = f"site {name}"
        upload_limit = _size_field(
            data, 'torrentUploadSpeedLimit', ConfigDefaults.SITE_TORRENT_UPLOAD_SPEED_LIMIT, owner)
        if upload_limit <= 0:
            upload_limit = ConfigDefaults.SITE_TORRENT_UPLOAD_SPEED_LIMIT
        return cls(
            name=name,
            type=str(data.get('type') or 'nexusphp'),
            url=str(data.get('url') or ''),
            disabled=bool(data.get('disabled', False)),
            torrent_upload_speed_limit=upload_limit,
            brush_torrent_min_size_limit=_size_field(
                data, 'brushTorrentMinSizeLimit', ConfigDefaults.SITE_BRUSH_TORRENT_MIN_SIZE_LIMIT, owner),
            brush_torrent_max_size_limit=_size_field(
                data, 'brushTorrentMaxSizeLimit', ConfigDefaults.SITE_BRUSH_TORRENT_MAX_SIZE_LIMIT, owner),
            brush_allow_none_free=bool(data.get('brushAllowNoneFree', False)),
            brush_allow_paid=bool(data.get('brushAllowPaid', False)),
            brush_allow_hr=bool(data.get('brushAllowHr', False)),
            brush_allow_zero_seeders=bool(data.get('brushAllowZeroSeeders', False)),
            brush_excludes=_str_list(data.get('brushExcludes')),
        )


@dataclass
class BrushConfig:
    log_level: str = "INFO"
    log_file: str = ""
    clients: Dict[str, ClientConfig] = field(default_factory=dict)
    sites: Dict[str, SiteConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BrushConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("配置文件顶层必须是字典")
        config = cls(
            log_level=str(data.get('logLevel') or 'INFO').upper(),
            log_file=str(data.get('logFile') or ''),
        )
        for item in data.get('clients') or []:
            client = ClientConfig.from_dict(item)
            if client.name in config.clients:
                raise ConfigError(f"客户端名称重复: {client.name}")
            config.clients[client.name] = client
        for item in data.get('sites') or []:
            site = SiteConfig.from_dict(item)
            if site.name in config.sites:
                raise ConfigError(f"站点名称重复: {site.name}")
            config.sites[site.name] = site
        return config

    @classmethod
    def load(cls, path: str) -> "BrushConfig":
        if not os.path.exists(path):
            raise ConfigError(f"配置文件不存在: {path}")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"解析配置文件失败 {path}: {e}") from e
        config = cls.from_dict(data)
        logger.info(f"已加载配置 {path}: 客户端 {len(config.clients)} 个, 站点 {len(config.sites)} 个")
        return config

    def get_client(self, name: str) -> ClientConfig:
        if name not in self.clients:
            raise ConfigError(f"客户端不存在: {name}")
        return self.clients[name]

    def get_site(self, name: str) -> SiteConfig:
        if name not in self.sites:
            raise ConfigError(f"站点不存在: {name}")
        return self.sites[name]


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """配置日志（控制台 + 可选的文件）"""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
