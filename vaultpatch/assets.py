"""
Asset-path reconciler.

Compiled app code may look assets up under an alternate prefix
("app/assets/...") while the manifest only records "assets/...". When the
binary's string pool carries the prefixed token and the manifest has nothing
under that prefix yet, every entry is mirrored under the prefix. Originals are
never removed; undoing the change means deleting the new keys.
"""

import json
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from .config import Settings
from .log import info, ok, warn
from .native import contains_token


def _prefixed(value, prefix: str):
    if isinstance(value, str):
        return prefix + value
    if isinstance(value, dict) and isinstance(value.get("asset"), str):
        out = dict(value)
        out["asset"] = prefix + value["asset"]
        return out
    return value


def _paths(value) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict) and isinstance(value.get("asset"), str):
        return [value["asset"]]
    return []


def mirror_entries(manifest: Dict[str, list], prefix: str) -> Dict[str, list]:
    """New entries only: every key not yet under `prefix`, key and variants prefixed."""
    added = {}
    for key, variants in manifest.items():
        if key.startswith(prefix):
            continue
        new_key = prefix + key
        if new_key in manifest or new_key in added:
            continue
        added[new_key] = [_prefixed(v, prefix) for v in variants]
    return added


def reconcile(binary, manifest_path, settings: Optional[Settings] = None,
              assets_root: Optional[Path] = None) -> int:
    """
    Returns the number of manifest entries added. With assets_root, the files
    behind the new paths are copied from their unprefixed originals as well.
    """
    s = settings or Settings()
    manifest_path = Path(manifest_path)
    token = s.asset_prefix + s.asset_base
    if not contains_token(binary, token):
        info(f"  Asset paths OK ({token!r} not referenced by {Path(binary).name})")
        return 0

    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    if not isinstance(manifest, dict):
        warn(f"  {manifest_path.name}: not a JSON object, skipped")
        return 0
    if any(k.startswith(s.asset_prefix) for k in manifest):
        info(f"  {manifest_path.name} already has {s.asset_prefix!r} entries")
        return 0

    added = mirror_entries(manifest, s.asset_prefix)
    if not added:
        return 0
    manifest.update(added)
    manifest_path.write_text(json.dumps(manifest, separators=(',', ':')), encoding="utf-8")
    ok(f"  {manifest_path.name}: +{len(added)} entries under {s.asset_prefix!r}")

    if assets_root is not None:
        copied = mirror_files(Path(assets_root), added, s.asset_prefix)
        info(f"  Mirrored {copied} asset files")
    return len(added)


def mirror_files(assets_root: Path, added: Dict[str, list], prefix: str) -> int:
    copied = 0
    for variants in added.values():
        for dst_rel in (p for v in variants for p in _paths(v)):
            src = assets_root / dst_rel[len(prefix):]
            dst = assets_root / dst_rel
            if src.is_file() and not dst.exists():
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
                copied += 1
    return copied
