"""Time utilities for timezone-aware datetime handling."""

from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from time import struct_time
from typing import Optional
import calendar
import pytz


def utcnow() -> datetime:
    """取得當前 UTC 時間 (tz-aware)"""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """
    轉換時間為 UTC tz-aware datetime
    
    Args:
        dt: 輸入時間
        tz_name: 原時區名稱 (若 dt 為 naive)
    
    Returns:
        UTC tz-aware datetime
    """
    if dt.tzinfo is None:
        if tz_name:
            tz = pytz.timezone(tz_name)
            dt = tz.localize(dt)
        else:
            # 假設為 UTC
            dt = dt.replace(tzinfo=timezone.utc)
    
    return dt.astimezone(timezone.utc)


def from_struct_time(value: Optional[struct_time]) -> Optional[datetime]:
    """feedparser 的 *_parsed (UTC struct_time) 轉 datetime"""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_feed_date(date_str: Optional[str]) -> Optional[datetime]:
    """
    解析 RSS (RFC 822) 或 Atom (ISO8601) 日期字串
    
    Returns:
        UTC tz-aware datetime or None
    """
    if not date_str:
        return None
    
    try:
        return to_utc(parsedate_to_datetime(date_str))
    except (TypeError, ValueError, IndexError):
        pass
    
    try:
        return parse_iso8601(date_str)
    except ValueError:
        return None


def local_today(tz_name: str = "UTC") -> date:
    """指定時區的今天日期"""
    return utcnow().astimezone(pytz.timezone(tz_name)).date()


def format_iso8601(dt: datetime) -> str:
    """格式化為 ISO8601 字串"""
    return dt.isoformat()


def parse_iso8601(date_str: str) -> datetime:
    """解析 ISO8601 字串為 tz-aware datetime"""
    dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
    return to_utc(dt)
