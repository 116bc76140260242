"""
Error taxonomy.

Everything except SymbolMismatch is local to one file: callers log it and
move on to the next unit. SymbolMismatch is the hard gate for native library
substitution and always propagates.
"""

from pathlib import Path
from typing import Iterable


class VaultpatchError(Exception):
    pass


class ParseError(VaultpatchError):
    def __init__(self, path, reason: str):
        self.path = Path(path) if path is not None else None
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class StructuralMismatch(VaultpatchError):
    def __init__(self, unit: str, method: str, reason: str):
        self.unit = unit
        self.method = method
        self.reason = reason
        super().__init__(f"{unit}->{method}: {reason}")


class BinaryFormatError(VaultpatchError):
    def __init__(self, path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class SymbolMismatch(VaultpatchError):
    """Exported function sets differ; the replacement binary must not be used."""

    def __init__(self, missing: Iterable[str], extra: Iterable[str]):
        self.missing = sorted(missing)
        self.extra = sorted(extra)
        parts = []
        if self.missing:
            parts.append(f"{len(self.missing)} missing ({', '.join(self.missing[:5])})")
        if self.extra:
            parts.append(f"{len(self.extra)} extra ({', '.join(self.extra[:5])})")
        super().__init__("exported symbols mismatch: " + "; ".join(parts))
