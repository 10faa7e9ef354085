from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from common.utils import deep_merge


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "tiles": {
        "store_root": "data/stores",
        "store_name": "tiles",
        "tiles_base": "/tiles",
        "manifest_name": "osd_config.json",
        "tile_size": 256,
        "base_scale": 2.0,
        "encoding": "png",
        "workers": 4,
        "network_fallback": False,
    },
    "assets": {
        "prefix": "assets",
        "version": "v1",
        "build_prefix": "/build/",
        "offline_page": "/offline.html",
        "precache": ["/", "/offline.html"],
    },
    "network": {
        "upstream": "http://127.0.0.1:3000",
        "timeout_s": 10.0,
    },
    "gateway": {
        "public_origin": "http://127.0.0.1:8000",
        "host": "127.0.0.1",
        "port": 8000,
        "lifecycle_on_startup": True,
    },
    "logging": {"level": "INFO"},
}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load YAML config and merge it over DEFAULTS.
    Path precedence: explicit arg, env APP_CONFIG, config/params.yaml.
    A missing file yields the defaults.
    """
    p = Path(path or os.environ.get("APP_CONFIG") or DEFAULT_CONFIG_PATH)
    if not p.exists():
        return deep_merge(DEFAULTS, {})
    with p.open("r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"config root must be a mapping: {p}")
    return deep_merge(DEFAULTS, loaded)
