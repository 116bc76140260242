"""
smali.py  ─  Unit Loader
═══════════════════════════════════════════════════════════════════════════════
One disassembled class per .smali file. A unit keeps its raw lines verbatim,
each tagged with a line kind, so every edit is a splice of whole lines and
untouched content is written back byte-for-byte.

  HEADER        .class public final Lcom/foo/a;
  DIRECTIVE     .super / .source / .implements / annotations / comments
  FIELD         .field public static a:Ljava/lang/String;
  METHOD_OPEN   .method public static b(Ljava/lang/Class;)V
  INSTRUCTION   anything between METHOD_OPEN and METHOD_CLOSE that is not blank
  METHOD_CLOSE  .end method
  BLANK
"""

import re
from enum import Enum
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ParseError
from .log import info, warn

STRING_TYPE = "Ljava/lang/String;"

_CLASS_RE  = re.compile(r'^\.class\s+(?:[\w-]+\s+)*(?P<desc>L[^;\s]+;)\s*$')
_FIELD_RE  = re.compile(
    r'^\.field\s+(?P<flags>(?:[\w-]+\s+)*?)(?P<name>[^\s:]+):(?P<type>[^\s=]+)'
    r'(?:\s*=\s*(?P<value>.+?))?\s*$')
_METHOD_RE = re.compile(
    r'^\.method\s+(?P<flags>(?:[\w-]+\s+)*?)(?P<name>[^\s(]+)'
    r'\((?P<params>[^)]*)\)(?P<ret>\S+)\s*$')
_TYPE_RE   = re.compile(r'\[*(?:L[^;]+;|[ZBSCIJFDV])')
_REG_RE    = re.compile(r'^([vp])(\d+)$')


class Kind(Enum):
    HEADER       = "header"
    DIRECTIVE    = "directive"
    FIELD        = "field"
    METHOD_OPEN  = "method-open"
    INSTRUCTION  = "instruction"
    METHOD_CLOSE = "method-close"
    BLANK        = "blank"


@dataclass(frozen=True)
class FieldDecl:
    index: int
    name: str
    type: str
    flags: Tuple[str, ...]
    value: Optional[str] = None

    @property
    def is_static(self) -> bool:
        return "static" in self.flags

    @property
    def is_volatile(self) -> bool:
        return "volatile" in self.flags


@dataclass(frozen=True)
class Method:
    open: int            # index of the .method line
    close: int           # index of the .end method line
    name: str
    params: Tuple[str, ...]
    ret: str
    flags: Tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({''.join(self.params)}){self.ret}"

    @property
    def is_static(self) -> bool:
        return "static" in self.flags

    @property
    def has_code(self) -> bool:
        return not ({"abstract", "native"} & set(self.flags))


@dataclass(frozen=True)
class Insn:
    index: int
    op: str
    operands: str

    @property
    def registers(self) -> List[str]:
        """Registers of an invoke-style {..} list, ranges expanded."""
        return parse_register_list(self.operands)

    @property
    def first_register(self) -> Optional[str]:
        head = self.operands.split(",", 1)[0].strip()
        return head if _REG_RE.match(head) else None


def split_params(params: str) -> Tuple[str, ...]:
    return tuple(_TYPE_RE.findall(params))


def parse_register_list(operands: str) -> List[str]:
    m = re.match(r'\s*\{([^}]*)\}', operands)
    if not m:
        return []
    inner = m.group(1).strip()
    if not inner:
        return []
    if ".." in inner:
        lo, hi = (r.strip() for r in inner.split("..", 1))
        ml, mh = _REG_RE.match(lo), _REG_RE.match(hi)
        if not ml or not mh or ml.group(1) != mh.group(1):
            return []
        return [f"{ml.group(1)}{n}" for n in range(int(ml.group(2)), int(mh.group(2)) + 1)]
    return [r.strip() for r in inner.split(",") if r.strip()]


def is_code(text: str) -> bool:
    """True for a real instruction line (not a label, directive or comment)."""
    s = text.strip()
    return bool(s) and s[0] not in ":.#"


def indent_of(text: str) -> str:
    return re.match(r"\s*", text).group(0)


# ═══════════════════════════════════════════════════════════════════════════════
#  C O M P I L A T I O N   U N I T
# ═══════════════════════════════════════════════════════════════════════════════
class CompilationUnit:

    def __init__(self, path: Optional[Path], text: str):
        self.path = Path(path) if path is not None else None
        self.original_text = text
        self.trailing_newline = text.endswith("\n")
        body = text[:-1] if self.trailing_newline else text
        self.lines: List[str] = body.split("\n") if body else []
        self.kinds: List[Kind] = []
        self.descriptor = ""
        self._methods: Optional[List[Method]] = None
        self._classify()

    def __repr__(self):
        return f"<CompilationUnit {self.descriptor} {self.path}>"

    # ── structure ────────────────────────────────────────────────────────────
    def _classify(self) -> None:
        kinds: List[Kind] = []
        header = None
        in_method = False
        for n, text in enumerate(self.lines):
            s = text.strip()
            token = s.split(None, 1)[0] if s else ""
            if in_method:
                if token == ".end" and s.split()[:2] == [".end", "method"]:
                    kinds.append(Kind.METHOD_CLOSE); in_method = False
                elif token == ".method":
                    raise ParseError(self.path, f"line {n + 1}: nested .method")
                elif not s:
                    kinds.append(Kind.BLANK)
                else:
                    kinds.append(Kind.INSTRUCTION)
                continue
            if not s:
                kinds.append(Kind.BLANK)
            elif token == ".class" and header is None:
                m = _CLASS_RE.match(s)
                if not m:
                    raise ParseError(self.path, f"line {n + 1}: malformed .class header")
                header = m.group("desc")
                kinds.append(Kind.HEADER)
            elif token == ".field":
                kinds.append(Kind.FIELD)
            elif token == ".method":
                if not _METHOD_RE.match(s):
                    raise ParseError(self.path, f"line {n + 1}: malformed .method header")
                kinds.append(Kind.METHOD_OPEN); in_method = True
            elif s.split()[:2] == [".end", "method"]:
                raise ParseError(self.path, f"line {n + 1}: .end method outside a method")
            else:
                kinds.append(Kind.DIRECTIVE)
        if in_method:
            raise ParseError(self.path, "unterminated method")
        if header is None:
            raise ParseError(self.path, "missing .class header")
        self.kinds = kinds
        self.descriptor = header
        self._methods = None

    @property
    def fields(self) -> List[FieldDecl]:
        out = []
        for i, kind in enumerate(self.kinds):
            if kind is not Kind.FIELD:
                continue
            m = _FIELD_RE.match(self.lines[i].strip())
            if m:
                out.append(FieldDecl(i, m.group("name"), m.group("type"),
                                     tuple(m.group("flags").split()), m.group("value")))
        return out

    @property
    def string_fields(self) -> List[FieldDecl]:
        """Declared static String fields, in declaration order."""
        return [f for f in self.fields if f.is_static and f.type == STRING_TYPE]

    @property
    def methods(self) -> List[Method]:
        if self._methods is None:
            found, start = [], None
            for i, kind in enumerate(self.kinds):
                if kind is Kind.METHOD_OPEN:
                    start = i
                elif kind is Kind.METHOD_CLOSE and start is not None:
                    m = _METHOD_RE.match(self.lines[start].strip())
                    found.append(Method(start, i, m.group("name"),
                                        split_params(m.group("params")), m.group("ret"),
                                        tuple(m.group("flags").split())))
                    start = None
            self._methods = found
        return self._methods

    def method(self, name: str, signature: Optional[str] = None) -> Optional[Method]:
        for m in self.methods:
            if m.name == name and (signature is None or m.signature == signature):
                return m
        return None

    def body(self, method: Method) -> List[str]:
        return self.lines[method.open + 1:method.close]

    def instructions(self, method: Method) -> List[Insn]:
        out = []
        for i in range(method.open + 1, method.close):
            text = self.lines[i]
            if is_code(text):
                s = text.strip()
                op, _, rest = s.partition(" ")
                out.append(Insn(i, op, rest.strip()))
        return out

    def has_directive(self, prefix: str) -> bool:
        return any(k is Kind.DIRECTIVE and self.lines[i].strip().startswith(prefix)
                   for i, k in enumerate(self.kinds))

    # ── editing ──────────────────────────────────────────────────────────────
    def splice(self, start: int, end: int, new_lines: Iterable[str]) -> None:
        """Replace lines[start:end] with new_lines and re-derive line kinds."""
        old = self.lines
        self.lines = old[:start] + list(new_lines) + old[end:]
        try:
            self._classify()
        except ParseError:
            self.lines = old
            self._classify()
            raise

    def insert(self, index: int, new_lines: Iterable[str]) -> None:
        self.splice(index, index, new_lines)

    def render(self) -> str:
        text = "\n".join(self.lines)
        return text + "\n" if self.trailing_newline else text

    @property
    def dirty(self) -> bool:
        return self.render() != self.original_text

    def write(self) -> bool:
        """Write back if changed. Returns True when the file was rewritten."""
        if self.path is None or not self.dirty:
            return False
        text = self.render()
        self.path.write_text(text, encoding="utf-8")
        self.original_text = text
        return True


# ═══════════════════════════════════════════════════════════════════════════════
#  L O A D E R
# ═══════════════════════════════════════════════════════════════════════════════

def parse_unit(path: Path) -> CompilationUnit:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(path, f"not UTF-8 ({exc.reason})")
    except OSError as exc:
        raise ParseError(path, f"unreadable ({exc.strerror})")
    return CompilationUnit(path, text)


def smali_files(root: Path) -> List[Path]:
    return sorted(p for p in Path(root).rglob("*.smali") if p.is_file())


def iter_units(root: Path, skipped: Optional[List[Path]] = None) -> Iterator[CompilationUnit]:
    """Lazily parse every unit below root; malformed files are logged and skipped."""
    for path in smali_files(root):
        try:
            yield parse_unit(path)
        except ParseError as exc:
            warn(f"  skip {exc}")
            if skipped is not None:
                skipped.append(path)


def _try_parse(path: Path):
    try:
        return parse_unit(path)
    except ParseError as exc:
        return exc


def load_units(root: Path, workers: int = 1,
               skipped: Optional[List[Path]] = None) -> List[CompilationUnit]:
    """Parse the whole tree on a thread pool; result order is path order."""
    paths = smali_files(root)
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        results = list(pool.map(_try_parse, paths))
    units = []
    for path, res in zip(paths, results):
        if isinstance(res, ParseError):
            warn(f"  skip {res}")
            if skipped is not None:
                skipped.append(path)
        else:
            units.append(res)
    info(f"  Loaded {len(units)} units ({len(paths) - len(units)} skipped)")
    return units


def class_index(units: Iterable[CompilationUnit]) -> Dict[str, CompilationUnit]:
    """descriptor -> unit; the first unit in path order wins on duplicates."""
    index: Dict[str, CompilationUnit] = {}
    for u in units:
        index.setdefault(u.descriptor, u)
    return index
