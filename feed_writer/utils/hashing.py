"""Hashing utilities for store filenames and run identities."""

import hashlib
import json
from typing import Dict, Any


def content_hash(title: str, body: str) -> str:
    """
    產生 content hash
    
    Args:
        title: 標題
        body: 本文
    
    Returns:
        SHA256 hash (hex)
    """
    # 正規化：小寫、去除多餘空白
    normalized = f"{title.lower().strip()} {body.lower().strip()}"
    normalized = " ".join(normalized.split())
    
    return hashlib.sha256(normalized.encode('utf-8')).hexdigest()


def key_digest(canonical_key: str) -> str:
    """
    Canonical key 的檔名安全 digest
    
    canonical key 可能含日文與 ':'，不直接當作檔名。
    
    Returns:
        SHA256 hash (hex, 前 32 字元)
    """
    return hashlib.sha256(canonical_key.encode('utf-8')).hexdigest()[:32]


def config_hash(config_dict: Dict[str, Any]) -> str:
    """
    產生 config hash
    
    Args:
        config_dict: 設定字典
    
    Returns:
        SHA256 hash (hex, 前 16 字元)
    """
    # 排除會變動的欄位 (例如 output 路徑)
    stable_keys = ['template_id', 'generation_options', 'feeds', 'max_attempts']
    stable_config = {k: config_dict.get(k) for k in stable_keys if k in config_dict}
    
    json_str = json.dumps(stable_config, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(json_str.encode('utf-8')).hexdigest()[:16]
