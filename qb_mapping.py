#!/usr/bin/env python3
"""
qBittorrent 数据映射

把 qBittorrent Web API 返回的种子信息 / server_state（torrents_info、sync_maindata 的字典）
转换为刷流引擎使用的 ClientTorrent / ClientStatus。刷流 meta 编码在种子名称中。
"""

from typing import Any, Dict, Iterable, List, Optional

from brush_models import ClientStatus, ClientTorrent, parse_meta_from_name

BRUSH_CATEGORY = "_brush"

_STATE_MAP = {
    'forcedUP': 'seeding',
    'stalledUP': 'seeding',
    'queuedUP': 'seeding',
    'uploading': 'seeding',
    'metaDL': 'downloading',
    'stalledDL': 'downloading',
    'checkingDL': 'downloading',
    'forcedDL': 'downloading',
    'downloading': 'downloading',
    'pausedUP': 'completed',
    'stoppedUP': 'completed',
    'pausedDL': 'paused',
    'stoppedDL': 'paused',
    'missingFiles': 'error',
}


def simplify_state(qb_state: str) -> str:
    """qB 原始状态 -> seeding|downloading|completed|paused|error|..."""
    return _STATE_MAP.get(qb_state, qb_state or 'unknown')


def _int(data: Dict[str, Any], key: str, default: int = 0) -> int:
    value = data.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def client_torrent_from_qb(data: Dict[str, Any]) -> ClientTorrent:
    name, meta = parse_meta_from_name(data.get('name', ''))
    tags = [t.strip() for t in (data.get('tags') or '').split(',') if t.strip()]
    return ClientTorrent(
        info_hash=data.get('hash', ''),
        name=name,
        state=simplify_state(data.get('state', '')),
        size=_int(data, 'size'),
        size_completed=_int(data, 'completed'),
        upload_speed=_int(data, 'upspeed'),
        download_speed=_int(data, 'dlspeed'),
        uploaded=_int(data, 'uploaded'),
        downloaded=_int(data, 'downloaded'),
        atime=_int(data, 'added_on'),
        ctime=_int(data, 'completion_on'),
        download_speed_limit=_int(data, 'dl_limit', -1),
        category=data.get('category', '') or '',
        tags=tags,
        meta=meta,
    )


def client_torrents_from_qb(items: Iterable[Dict[str, Any]],
                            category: Optional[str] = BRUSH_CATEGORY) -> List[ClientTorrent]:
    """转换种子列表，category 为 None 时不过滤分类"""
    torrents = []
    for item in items:
        if category is not None and item.get('category', '') != category:
            continue
        torrents.append(client_torrent_from_qb(item))
    return torrents


def client_status_from_qb(server_state: Dict[str, Any]) -> ClientStatus:
    return ClientStatus(
        free_space_on_disk=_int(server_state, 'free_space_on_disk', -1),
        upload_speed=_int(server_state, 'up_info_speed'),
        upload_speed_limit=_int(server_state, 'up_rate_limit'),
        download_speed=_int(server_state, 'dl_info_speed'),
        download_speed_limit=_int(server_state, 'dl_rate_limit'),
    )
