"""
native.py  ─  native library checks
═══════════════════════════════════════════════════════════════════════════════
Only the dynamic symbol table and the printable string pool are read; nothing
is relocated or executed.

  exported_symbols()   global functions defined in executable sections of
                       .dynsym (what `nm -D` prints as "T")
  verify()             hard gate: both binaries must export the same set,
                       otherwise SymbolMismatch propagates to the caller
  substitute_binary()  verify, back up the original once, copy replacement
"""

import re
import shutil
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

from .errors import BinaryFormatError, SymbolMismatch
from .log import info, ok, warn

CRASH_PRONE_LIBS = ("libembrace-native.so", "libpairipcore.so")

_COMMIT_RE = re.compile(r'^[0-9a-f]{40}$')


@dataclass(frozen=True)
class SymbolSet:
    """Exported function names in first-seen order; compared as a set."""
    names: Tuple[str, ...]

    def __len__(self):
        return len(self.names)

    def __iter__(self):
        return iter(self.names)

    def __contains__(self, name):
        return name in self.names

    def compatible(self, other: "SymbolSet") -> bool:
        return set(self.names) == set(other.names)

    def diff(self, other: "SymbolSet") -> Tuple[List[str], List[str]]:
        """(in self but not other, in other but not self)."""
        mine, theirs = set(self.names), set(other.names)
        return sorted(mine - theirs), sorted(theirs - mine)


def exported_symbols(path) -> SymbolSet:
    path = Path(path)
    try:
        with open(path, "rb") as f:
            elf = ELFFile(f)
            dynsym = elf.get_section_by_name(".dynsym")
            if dynsym is None or not isinstance(dynsym, SymbolTableSection):
                raise BinaryFormatError(path, "no .dynsym section")
            names, seen = [], set()
            for sym in dynsym.iter_symbols():
                if not sym.name or sym['st_info']['bind'] != 'STB_GLOBAL':
                    continue
                shndx = sym['st_shndx']
                if not isinstance(shndx, int) or shndx == 0:
                    continue
                if not elf.get_section(shndx)['sh_flags'] & SH_FLAGS.SHF_EXECINSTR:
                    continue
                if sym.name not in seen:
                    seen.add(sym.name); names.append(sym.name)
    except ELFError as exc:
        raise BinaryFormatError(path, f"not an ELF object ({exc})")
    except OSError as exc:
        raise BinaryFormatError(path, f"unreadable ({exc.strerror})")
    return SymbolSet(tuple(names))


def verify(original, replacement) -> SymbolSet:
    """Raise SymbolMismatch unless both binaries export the same functions."""
    a, b = exported_symbols(original), exported_symbols(replacement)
    missing, extra = a.diff(b)
    if missing or extra:
        raise SymbolMismatch(missing, extra)
    ok(f"  Verified: all {len(a)} exported symbols match")
    return a


def substitute_binary(original, replacement, backup: Optional[Path] = None) -> Path:
    """
    Replace `original` with `replacement` after verification.
    The first backup is never overwritten. Returns the backup path.
    """
    original, replacement = Path(original), Path(replacement)
    verify(original, replacement)
    bak = Path(backup) if backup is not None else Path(str(original) + ".bak")
    if not bak.exists():
        bak.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(original, bak)
        ok(f"  Backup: {bak}")
    shutil.copy2(replacement, original)
    ok(f"  Replaced {original.name} with {replacement}")
    return bak


def read_string_pool(path, min_len: int = 4) -> List[str]:
    """Printable ASCII runs of at least min_len bytes, in file order (like `strings`)."""
    data = Path(path).read_bytes()
    pat = re.compile(rb'[\x20-\x7e]{%d,}' % min_len)
    return [m.group(0).decode("ascii") for m in pat.finditer(data)]


def contains_token(path, token: str) -> bool:
    return any(token in s for s in read_string_pool(path))


def engine_commits(path) -> List[str]:
    """40-hex-digit build ids embedded in the binary, deduplicated, in file order."""
    out = []
    for s in read_string_pool(path, 40):
        if _COMMIT_RE.match(s) and s not in out:
            out.append(s)
    return out


def prune_native_libs(lib_root, names: Sequence[str] = CRASH_PRONE_LIBS) -> List[Path]:
    lib_root = Path(lib_root)
    if not lib_root.is_dir():
        return []
    removed = []
    for name in names:
        for lib in sorted(lib_root.rglob(name)):
            lib.unlink()
            removed.append(lib)
            info(f"  Removed: {lib.relative_to(lib_root)}")
    (ok if removed else warn)(f"  prune_native_libs: {len(removed)}")
    return removed
