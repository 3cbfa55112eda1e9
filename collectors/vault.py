"""Vault collector — markdown notes edited recently.

Scans a notes directory (e.g. an Obsidian vault) by mtime. Title is the
first level-1 heading, falling back to the file stem.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path

log = logging.getLogger(__name__)

VAULT_SOURCE = "vault"


def _note_title(path: Path) -> str:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for _ in range(20):
                line = f.readline()
                if not line:
                    break
                if line.startswith("# "):
                    return line[2:].strip()
    except OSError:
        pass
    return path.stem


class VaultCollector:
    name = VAULT_SOURCE

    def __init__(
        self,
        root: str | Path,
        lookback_hours: float = 24,
        max_items: int = 20,
        exclude_dirs: list[str] | None = None,
    ):
        self.root = Path(root).expanduser()
        self.lookback_hours = lookback_hours
        self.max_items = max_items
        self.exclude_dirs = set(exclude_dirs or [".obsidian", ".trash", ".git"])

    async def collect(self) -> dict:
        notes = await asyncio.to_thread(self._scan)
        return {"recently_modified": notes}

    def _scan(self) -> list[dict]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"Vault directory not found: {self.root}")

        cutoff = time.time() - self.lookback_hours * 3600
        found: list[tuple[float, Path]] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if d not in self.exclude_dirs]
            for fn in filenames:
                if not fn.endswith(".md"):
                    continue
                p = Path(dirpath) / fn
                try:
                    mtime = p.stat().st_mtime
                except OSError:
                    continue
                if mtime >= cutoff:
                    found.append((mtime, p))

        found.sort(key=lambda item: item[0], reverse=True)
        return [
            {
                "title": _note_title(p),
                "file_path": str(p.relative_to(self.root)),
                "modified_at": time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(mtime)),
            }
            for mtime, p in found[: self.max_items]
        ]
