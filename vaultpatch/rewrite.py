"""
rewrite.py  ─  Patch Applier
═══════════════════════════════════════════════════════════════════════════════
Surgical edits on parsed units. Every helper splices whole lines and is
idempotent: running it again over its own output changes nothing.

  ①  rewrite_initializer   vault <clinit> assigning every String field once
  ②  wrap_method           whole-body protected region, type-default fallback
  ③  wrap_call_sites       protected region around one crash-prone invoke
  ④  guard_field_lookup    empty-name guard in (Class, String) -> Field helpers
  ⑤  stub_method           replace a body with a type-default return
"""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .detectors import Aggregate
from .errors import StructuralMismatch
from .log import warn
from .smali import CompilationUnit, Method, STRING_TYPE, indent_of, is_code

IND = "    "
CATCH_TYPE = "Ljava/lang/Throwable;"

REGION_START = ":safe_start"
REGION_END   = ":safe_end"
REGION_CATCH = ":safe_catch"
CALL_START   = ":safe_call_start_"
CALL_END     = ":safe_call_end_"
CALL_CATCH   = ":safe_call_catch_"
GUARD_LABEL  = ":field_name_present"

_PAYLOADS = (".packed-switch", ".sparse-switch", ".array-data")
_REG_DIRECTIVE_RE = re.compile(r'^\.(locals|registers)\s+(\d+)\s*$')


def smali_quote(value: str) -> str:
    out = []
    for ch in value:
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\t":
            out.append("\\t")
        elif ch == "\r":
            out.append("\\r")
        elif ord(ch) < 0x20 or ord(ch) == 0x7f:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return '"' + "".join(out) + '"'


def default_return(ret: str) -> Tuple[List[str], int]:
    """(instructions, registers needed) returning the zero value of `ret`."""
    if ret == "V":
        return ["return-void"], 0
    if ret[0] in "L[":
        return ["const/4 v0, 0x0", "return-object v0"], 1
    if ret in ("J", "D"):
        return ["const-wide/16 v0, 0x0", "return-wide v0"], 2
    return ["const/4 v0, 0x0", "return v0"], 1


# ═══════════════════════════════════════════════════════════════════════════════
#  M E T H O D   A N A T O M Y
# ═══════════════════════════════════════════════════════════════════════════════

def register_directive(unit: CompilationUnit, method: Method) -> Optional[Tuple[int, str, int]]:
    """(line index, 'locals' | 'registers', count) of the method's register directive."""
    for i in range(method.open + 1, method.close):
        m = _REG_DIRECTIVE_RE.match(unit.lines[i].strip())
        if m:
            return i, m.group(1), int(m.group(2))
        if is_code(unit.lines[i]):
            break
    return None


def param_registers(method: Method) -> int:
    n = 0 if method.is_static else 1
    return n + sum(2 if p in ("J", "D") else 1 for p in method.params)


def ensure_locals(unit: CompilationUnit, method: Method, needed: int) -> None:
    if needed <= 0:
        return
    found = register_directive(unit, method)
    if found is None:
        raise StructuralMismatch(unit.descriptor, method.name, "no .locals/.registers directive")
    idx, kind, count = found
    ind = indent_of(unit.lines[idx]) or IND
    if kind == "locals":
        if count < needed:
            unit.splice(idx, idx + 1, [f"{ind}.locals {needed}"])
    else:
        params = param_registers(method)
        if count - params < needed:
            unit.splice(idx, idx + 1, [f"{ind}.registers {params + needed}"])


def body_start(unit: CompilationUnit, method: Method) -> int:
    """First line after the register directive and any leading .param/.annotation blocks."""
    found = register_directive(unit, method)
    if found is None:
        raise StructuralMismatch(unit.descriptor, method.name, "no .locals/.registers directive")
    i = found[0] + 1
    while i < method.close:
        s = unit.lines[i].strip()
        if not s or s == ".prologue":
            i += 1
        elif s.startswith(".param"):
            j = i + 1
            while j < method.close and not unit.lines[j].strip():
                j += 1
            if j < method.close and unit.lines[j].strip().startswith(".annotation"):
                i = _block_end(unit, j, method.close, ".end param") + 1
            else:
                i += 1
        elif s.startswith(".annotation"):
            i = _block_end(unit, i, method.close, ".end annotation") + 1
        else:
            break
    return i


def _block_end(unit: CompilationUnit, start: int, limit: int, closer: str) -> int:
    for j in range(start, limit):
        if unit.lines[j].strip() == closer:
            return j
    raise StructuralMismatch(unit.descriptor, "?", f"unterminated block, expected {closer}")


def body_end(unit: CompilationUnit, method: Method) -> int:
    """Index before which a region may close: ahead of trailing data payloads."""
    for i in range(method.open + 1, method.close):
        if unit.lines[i].strip().startswith(_PAYLOADS):
            j = i
            while j - 1 > method.open and (unit.lines[j - 1].strip().startswith(":")
                                           or not unit.lines[j - 1].strip()):
                j -= 1
            return j
    return method.close


def refind(unit: CompilationUnit, method: Method) -> Method:
    found = unit.method(method.name, method.signature)
    if found is None:
        raise StructuralMismatch(unit.descriptor, method.name, "method vanished during edit")
    return found


# ═══════════════════════════════════════════════════════════════════════════════
#  ①  V A U L T   I N I T I A L I Z E R
# ═══════════════════════════════════════════════════════════════════════════════

def initializer_lines(unit: CompilationUnit, values: Dict[str, str]) -> List[str]:
    lines = [".method static constructor <clinit>()V", f"{IND}.locals 1", ""]
    for f in unit.string_fields:
        lines.append(f"{IND}const-string v0, {smali_quote(values.get(f.name, ''))}")
        lines.append("")
        lines.append(f"{IND}sput-object v0, {unit.descriptor}->{f.name}:{STRING_TYPE}")
        lines.append("")
    lines.append(f"{IND}return-void")
    lines.append(".end method")
    return lines


def rewrite_initializer(unit: CompilationUnit, agg: Aggregate) -> Tuple[int, int]:
    """
    (Re)generate the vault's <clinit>. Returns (assigned from records, defaults).
    An existing initializer is replaced where it stands; otherwise one is appended.
    """
    values = {}
    for f in unit.string_fields:
        v = agg.value(unit.descriptor, f.name)
        if v is not None:
            values[f.name] = v
    lines = initializer_lines(unit, values)

    existing = unit.method("<clinit>", "<clinit>()V")
    if existing is not None:
        unit.splice(existing.open, existing.close + 1, lines)
    else:
        end = len(unit.lines)
        while end > 0 and not unit.lines[end - 1].strip():
            end -= 1
        unit.splice(end, len(unit.lines), [""] + lines)
        unit.trailing_newline = True
    return len(values), len(unit.string_fields) - len(values)


# ═══════════════════════════════════════════════════════════════════════════════
#  ②  W H O L E - M E T H O D   R E G I O N
# ═══════════════════════════════════════════════════════════════════════════════

def is_wrapped(unit: CompilationUnit, method: Method) -> bool:
    return any(l.strip() == REGION_START for l in unit.body(method))


def wrap_method(unit: CompilationUnit, method: Method) -> bool:
    """
    Wrap the body in a catch-all region. On any Throwable the handler returns
    the type default (void / null / 0). Returns False when already wrapped.
    """
    if is_wrapped(unit, method):
        return False
    if not method.has_code:
        raise StructuralMismatch(unit.descriptor, method.name, "no code")
    if method.name == "<init>":
        raise StructuralMismatch(unit.descriptor, method.name, "constructors cannot be wrapped")

    fallback, needed = default_return(method.ret)
    ensure_locals(unit, method, needed)
    method = refind(unit, method)

    start, end = body_start(unit, method), body_end(unit, method)
    if not any(is_code(l) for l in unit.lines[start:end]):
        raise StructuralMismatch(unit.descriptor, method.name, "empty body")

    tail = [
        f"{IND}{REGION_END}",
        f"{IND}.catch {CATCH_TYPE} {{{REGION_START} .. {REGION_END}}} {REGION_CATCH}",
        "",
        f"{IND}{REGION_CATCH}",
    ] + [f"{IND}{l}" for l in fallback]
    if end != method.close:
        tail.append("")
    unit.insert(end, tail)
    unit.insert(start, [f"{IND}{REGION_START}"])
    return True


class RegionRule:
    """Selects methods that get a whole-body region."""
    name = ""

    def matches(self, unit: CompilationUnit, method: Method) -> bool:
        raise NotImplementedError


class MethodShapeRule(RegionRule):
    """Match on name, parameter shapes and/or return type."""

    def __init__(self, name: str, method_name: Optional[str] = None,
                 params: Optional[Sequence[str]] = None, ret: Optional[str] = None,
                 exclude: Sequence[str] = ()):
        self.name = name
        self.method_name = method_name
        self.params = tuple(params) if params is not None else None
        self.ret = ret
        self.exclude = tuple(exclude)

    def matches(self, unit, method):
        if unit.descriptor.startswith(self.exclude):
            return False
        if method.name in ("<init>", "<clinit>") or not method.has_code:
            return False
        if self.method_name is not None and method.name != self.method_name:
            return False
        if self.params is not None and method.params != self.params:
            return False
        return self.ret is None or method.ret == self.ret


class StaticInitRule(RegionRule):
    """<clinit> of classes that bootstrap something named by `needles`."""

    def __init__(self, name: str, needles: Sequence[str]):
        self.name = name
        self.needles = tuple(needles)

    def matches(self, unit, method):
        if method.name != "<clinit>":
            return False
        if not any(n in l for l in unit.lines for n in self.needles):
            return False
        return any(i.op.startswith("invoke-static") for i in unit.instructions(method))


class CipherStorageRule(RegionRule):
    """Methods of secure-storage classes that drive a cipher object held in a field."""
    name = "cipher-storage"
    _IGET_RE = re.compile(r'^(?P<reg>[vp]\d+),\s*[vp]\d+,\s*L[^;]+;->(?P<field>[^:\s]+):L[^;]+;$')
    _CALL_RE = re.compile(r'->(?:e|d|encrypt|decrypt|doFinal)\(')

    def matches(self, unit, method):
        if method.name in ("<init>", "<clinit>") or not method.has_code:
            return False
        fields = self.cipher_fields(unit)
        if not fields:
            return False
        body = "\n".join(unit.body(method))
        return any(f"->{f}:" in body for f in fields)

    def cipher_fields(self, unit: CompilationUnit) -> Set[str]:
        text = "\n".join(unit.lines)
        if "SharedPreferences" not in text:
            return set()
        if "FlutterSecureStorage" not in text and "flutter_secure_storage" not in text:
            low = text.lower()
            if "cipher" not in low or "encrypt" not in low:
                return set()
        found = set()
        for method in unit.methods:
            insns = unit.instructions(method)
            for pos, insn in enumerate(insns):
                m = self._IGET_RE.match(insn.operands) if insn.op == "iget-object" else None
                if not m:
                    continue
                for nxt in insns[pos + 1:pos + 9]:
                    if (nxt.op.startswith("invoke") and m.group("reg") in nxt.registers
                            and self._CALL_RE.search(nxt.operands)):
                        found.add(m.group("field"))
                        break
        return found


def inject_regions(unit: CompilationUnit, rules: Iterable[RegionRule],
                   protected: Set[str] = frozenset()) -> int:
    """Wrap every method any rule selects. Structural misses are logged and skipped."""
    if unit.descriptor in protected:
        return 0
    rules = tuple(rules)
    targets = [(m.name, m.signature) for m in unit.methods
               if any(r.matches(unit, m) for r in rules)]
    total = 0
    for name, sig in targets:
        method = unit.method(name, sig)
        try:
            if wrap_method(unit, method):
                total += 1
        except StructuralMismatch as exc:
            warn(f"    region skipped: {exc}")
    return total


# ═══════════════════════════════════════════════════════════════════════════════
#  ③  C A L L - S I T E   R E G I O N
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CallSiteTarget:
    needle: str                 # e.g. "Lio/embrace/android/embracesdk/Embrace;->start("
    exclude: str = ""           # descriptor prefix of the callee's own package


def wrap_call_sites(unit: CompilationUnit, target: CallSiteTarget) -> int:
    if target.exclude and unit.descriptor.startswith(target.exclude):
        return 0
    total = 0
    for sig in [(m.name, m.signature) for m in unit.methods]:
        method = unit.method(*sig)
        insns = unit.instructions(method)
        numbers = [int(l.strip()[len(CALL_START):]) for l in unit.body(method)
                   if l.strip().startswith(CALL_START) and l.strip()[len(CALL_START):].isdigit()]
        next_no = max(numbers, default=-1) + 1
        picks = []
        for pos, insn in enumerate(insns):
            if not insn.op.startswith("invoke") or target.needle not in insn.operands:
                continue
            if _previous_label(unit, insn.index).startswith(CALL_START):
                continue
            if pos + 1 < len(insns) and insns[pos + 1].op.startswith("move-result"):
                warn(f"    call site skipped: {unit.descriptor}->{method.name} "
                     f"line {insn.index + 1} (result is consumed)")
                continue
            picks.append((insn.index, next_no)); next_no += 1
        for idx, no in reversed(picks):
            ind = indent_of(unit.lines[idx]) or IND
            unit.splice(idx, idx + 1, [
                f"{ind}{CALL_START}{no}",
                unit.lines[idx],
                f"{ind}{CALL_END}{no}",
                f"{ind}.catch {CATCH_TYPE} {{{CALL_START}{no} .. {CALL_END}{no}}} {CALL_CATCH}{no}",
                f"{ind}{CALL_CATCH}{no}",
            ])
            total += 1
    return total


def _previous_label(unit: CompilationUnit, index: int) -> str:
    j = index - 1
    while j >= 0 and not unit.lines[j].strip():
        j -= 1
    return unit.lines[j].strip() if j >= 0 else ""


# ═══════════════════════════════════════════════════════════════════════════════
#  ④  E M P T Y - N A M E   G U A R D
# ═══════════════════════════════════════════════════════════════════════════════
FIELD_LOOKUP_PARAMS = ("Ljava/lang/Class;", "Ljava/lang/String;")
FIELD_LOOKUP_RET = "Ljava/lang/reflect/Field;"

_GUARD = [
    f"if-eqz p1, {GUARD_LABEL}",
    "invoke-virtual {p1}, Ljava/lang/String;->isEmpty()Z",
    "move-result v0",
    f"if-eqz v0, {GUARD_LABEL}",
    "invoke-virtual {p0}, Ljava/lang/Class;->getDeclaredFields()[Ljava/lang/reflect/Field;",
    "move-result-object v0",
    "array-length v1, v0",
    f"if-eqz v1, {GUARD_LABEL}",
    "const/4 v1, 0x0",
    "aget-object v0, v0, v1",
    "return-object v0",
]


def is_field_lookup(method: Method) -> bool:
    return (method.is_static and method.params == FIELD_LOOKUP_PARAMS
            and method.ret == FIELD_LOOKUP_RET and method.has_code)


def guard_field_lookup(unit: CompilationUnit) -> int:
    """Empty field names return the class's first declared field instead of throwing."""
    total = 0
    for sig in [(m.name, m.signature) for m in unit.methods if is_field_lookup(m)]:
        method = unit.method(*sig)
        if any(l.strip() == GUARD_LABEL for l in unit.body(method)):
            continue
        try:
            ensure_locals(unit, method, 2)
            method = refind(unit, method)
            start = body_start(unit, method)
        except StructuralMismatch as exc:
            warn(f"    guard skipped: {exc}")
            continue
        unit.insert(start, [f"{IND}{l}" for l in _GUARD] + ["", f"{IND}{GUARD_LABEL}"])
        total += 1
    return total


# ═══════════════════════════════════════════════════════════════════════════════
#  ⑤  S T U B S
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StubTarget:
    cls: str
    method: str


def stub_method(unit: CompilationUnit, method: Method) -> bool:
    """Replace the body with `return <default>`. False when already stubbed."""
    if method.name == "<init>":
        raise StructuralMismatch(unit.descriptor, method.name, "constructors cannot be stubbed")
    if not method.has_code:
        raise StructuralMismatch(unit.descriptor, method.name, "no code")
    fallback, needed = default_return(method.ret)
    directive = f".locals {needed}"
    current = [l.strip() for l in unit.body(method) if l.strip()]
    if current == [directive] + fallback:
        return False
    unit.splice(method.open + 1, method.close,
                [f"{IND}{directive}", ""] + [f"{IND}{l}" for l in fallback])
    return True


def apply_stubs(unit: CompilationUnit, targets: Iterable[StubTarget]) -> int:
    total = 0
    for t in targets:
        if t.cls != unit.descriptor:
            continue
        for sig in [(m.name, m.signature) for m in unit.methods if m.name == t.method]:
            try:
                if stub_method(unit, unit.method(*sig)):
                    total += 1
            except StructuralMismatch as exc:
                warn(f"    stub skipped: {exc}")
    return total
