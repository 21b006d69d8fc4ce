"""
clawlink.storage
小型 JSON 记录的读写：目录 0700，文件 0600。
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional


def read_json(path: Path) -> Optional[Any]:
    """读取失败（不存在 / 无法解析）一律返回 None。"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def write_json_private(path: Path, data: Any) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    # 已存在的文件不受 os.open 的 mode 影响
    os.chmod(path, 0o600)
