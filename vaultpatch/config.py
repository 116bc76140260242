"""
Settings and the string override map.

Every heuristic threshold lives here as a named value so a protection-scheme
revision can be met by retuning, not by editing the detectors. The CLI builds
Settings from the environment (.env supported); library callers construct it
directly.
"""

import os
import json
from pathlib import Path
from typing import Dict, Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv

ENV_PREFIX = "VAULTPATCH_"


@dataclass
class Settings:
    # vault classifier
    vault_min_fields: int = 20            # strictly more static String fields than this
    vault_max_methods: int = 2
    # detectors
    reflection_lookahead: int = 10        # instructions after the vault load
    class_lookback: int = 5
    property_lookahead: int = 8
    # asset reconciler
    asset_prefix: str = "app/"
    asset_base: str = "assets/"
    # runtime
    workers: int = field(default_factory=lambda: min(8, os.cpu_count() or 1))
    overrides_path: Optional[Path] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path=None) -> "Settings":
        """Build Settings from VAULTPATCH_* variables, after loading a .env file."""
        load_dotenv(dotenv_path)
        s = cls()
        for name, current in list(vars(s).items()):
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if name == "overrides_path":
                setattr(s, name, Path(raw))
            elif isinstance(current, int):
                setattr(s, name, int(raw))
            else:
                setattr(s, name, raw)
        return s

    def load_overrides(self) -> "OverrideMap":
        if self.overrides_path is None:
            return OverrideMap()
        return OverrideMap.load(self.overrides_path)


@dataclass
class OverrideMap:
    """
    Hand-maintained vault values, consulted only when no detector commits one.

    Keys are either "Lcls;->field" or a bare field name; the qualified form wins.
    """
    version: str = "0"
    values: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, path) -> "OverrideMap":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict) or not isinstance(data.get("values", {}), dict):
            raise ValueError(f"{path}: override map must be an object with a 'values' object")
        values = {str(k): str(v) for k, v in data.get("values", {}).items()}
        return cls(version=str(data.get("version", "0")), values=values)

    def lookup(self, cls_desc: str, field_name: str) -> Optional[str]:
        qualified = f"{cls_desc}->{field_name}"
        if qualified in self.values:
            return self.values[qualified]
        return self.values.get(field_name)

    def __len__(self):
        return len(self.values)
