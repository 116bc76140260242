"""
detectors.py  ─  vault value inference
═══════════════════════════════════════════════════════════════════════════════
Every `sget-object vX, <vault>->field:Ljava/lang/String;` is a vault load. Each
detector looks at the instructions around one load and either ignores it or
returns a ReflectionSite, with a value when it can prove one.

  FieldUpdaterDetector      priority 0   const-class + Atomic*FieldUpdater.newUpdater
                                         → the target class's single volatile field
  ReflectiveLookupDetector  priority 1   Class.forName / getMethod / loadClass ...
                                         → recorded, never resolved
  PropertyNameDetector      priority 2   nearby "getFoo()..." literal → "foo"

Detectors never touch shared state. aggregate() is the single barrier that
turns sites into PatchRecords: lowest priority number wins, then unit path,
then line index. A value that cannot be proven stays unset, and the field
keeps its empty default.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .config import OverrideMap, Settings
from .smali import CompilationUnit, Insn, Method, STRING_TYPE

ORIGIN_FIELD_UPDATER = "field-updater"
ORIGIN_REFLECTIVE    = "reflective-lookup"
ORIGIN_PROPERTY      = "property-name"
ORIGIN_OVERRIDE      = "override"

_SGET_RE = re.compile(r'^(?P<reg>[vp]\d+),\s*(?P<cls>L[^;]+;)->(?P<field>[^:\s]+):'
                      + re.escape(STRING_TYPE) + r'$')
_CONST_CLASS_RE = re.compile(r'^(?P<reg>[vp]\d+),\s*(?P<cls>L[^;]+;)$')
_UPDATER_RE = re.compile(
    r'Ljava/util/concurrent/atomic/Atomic(?:Integer|Long|Reference)FieldUpdater;->newUpdater\(')
_LOOKUP_RE = re.compile(
    r'Ljava/lang/Class;->(?:forName|get(?:Declared)?(?:Method|Field|Constructor))\('
    r'|Ljava/lang/ClassLoader;->loadClass\(')
_GETTER_RE = re.compile(
    r'^"get(?P<prop>[A-Za-z_$][\w$]*)\(\)'
    r'(?:Ljava/lang/String;|Ljava/lang/CharSequence;)?"$')

# Ops whose first register is read, not written.
_READS_FIRST = ("invoke", "sput", "iput", "aput", "if-", "return", "throw", "monitor",
                "goto", "packed-switch", "sparse-switch", "fill-array-data",
                "filled-new-array", "nop")

Key = Tuple[str, str]


@dataclass(frozen=True)
class ReflectionSite:
    unit: str                 # unit path (or descriptor when unsaved)
    line: int
    register: str
    vault_class: str
    field: str
    value: Optional[str]
    rule: str
    priority: int
    target_unit: str = ""

    @property
    def key(self) -> Key:
        return (self.vault_class, self.field)


@dataclass(frozen=True)
class PatchRecord:
    vault_class: str
    field: str
    value: str
    origin: str
    target_unit: str


@dataclass
class VaultLoad:
    unit: CompilationUnit
    method: Method
    insns: List[Insn]
    pos: int
    register: str
    vault_class: str
    field: str

    @property
    def line(self) -> int:
        return self.insns[self.pos].index

    def forward(self, count: int) -> List[Insn]:
        """Up to `count` following instructions, cut at the first clobber of the register."""
        out = []
        for insn in self.insns[self.pos + 1:self.pos + 1 + count]:
            out.append(insn)
            if clobbers(insn, self.register):
                break
        return out

    def site(self, detector: "Detector", value: Optional[str]) -> ReflectionSite:
        return ReflectionSite(str(self.unit.path or self.unit.descriptor), self.line,
                              self.register, self.vault_class, self.field, value,
                              detector.name, detector.priority, self.unit.descriptor)


@dataclass
class AnalysisContext:
    index: Dict[str, CompilationUnit]
    vaults: Set[str]
    settings: Settings = field(default_factory=Settings)


def clobbers(insn: Insn, register: str) -> bool:
    if insn.op.startswith(_READS_FIRST):
        return False
    return insn.first_register == register


def vault_loads(unit: CompilationUnit, vaults: Set[str]) -> Iterator[VaultLoad]:
    for method in unit.methods:
        insns = unit.instructions(method)
        for pos, insn in enumerate(insns):
            if insn.op != "sget-object":
                continue
            m = _SGET_RE.match(insn.operands)
            if m and m.group("cls") in vaults:
                yield VaultLoad(unit, method, insns, pos, m.group("reg"),
                                m.group("cls"), m.group("field"))


def literal_of(insn: Insn) -> Optional[str]:
    if not insn.op.startswith("const-string"):
        return None
    _, _, lit = insn.operands.partition(",")
    return lit.strip()


# ═══════════════════════════════════════════════════════════════════════════════
#  D E T E C T O R S
# ═══════════════════════════════════════════════════════════════════════════════
class Detector:
    name = ""
    priority = 99

    def inspect(self, load: VaultLoad, ctx: AnalysisContext) -> Optional[ReflectionSite]:
        raise NotImplementedError


class FieldUpdaterDetector(Detector):
    name = ORIGIN_FIELD_UPDATER
    priority = 0

    def inspect(self, load, ctx):
        s = ctx.settings
        for insn in load.forward(s.reflection_lookahead):
            if not insn.op.startswith("invoke") or not _UPDATER_RE.search(insn.operands):
                continue
            regs = insn.registers
            if len(regs) < 2 or regs[-1] != load.register:
                continue
            target = self._class_ref(load, insn, regs[0], s.class_lookback)
            return load.site(self, self._volatile_name(target, ctx))
        return None

    @staticmethod
    def _class_ref(load: VaultLoad, invoke: Insn, reg: str, lookback: int) -> Optional[str]:
        """Most recent const-class into `reg`, between load-lookback and the invoke."""
        end = load.insns.index(invoke)
        for insn in reversed(load.insns[max(0, load.pos - lookback):end]):
            if insn.op == "const-class":
                m = _CONST_CLASS_RE.match(insn.operands)
                if m and m.group("reg") == reg:
                    return m.group("cls")
        return None

    @staticmethod
    def _volatile_name(cls_desc: Optional[str], ctx: AnalysisContext) -> Optional[str]:
        target = ctx.index.get(cls_desc) if cls_desc else None
        if target is None:
            return None
        volatiles = [f for f in target.fields if f.is_volatile]
        return volatiles[0].name if len(volatiles) == 1 else None


class ReflectiveLookupDetector(Detector):
    name = ORIGIN_REFLECTIVE
    priority = 1

    def inspect(self, load, ctx):
        for insn in load.forward(ctx.settings.reflection_lookahead):
            if (insn.op.startswith("invoke") and _LOOKUP_RE.search(insn.operands)
                    and load.register in insn.registers):
                return load.site(self, None)
        return None


class PropertyNameDetector(Detector):
    name = ORIGIN_PROPERTY
    priority = 2

    def inspect(self, load, ctx):
        for insn in load.forward(ctx.settings.property_lookahead):
            lit = literal_of(insn)
            m = _GETTER_RE.match(lit) if lit else None
            if m:
                prop = m.group("prop")
                return load.site(self, prop[0].lower() + prop[1:])
        return None


DEFAULT_DETECTORS: Tuple[Detector, ...] = (
    FieldUpdaterDetector(), ReflectiveLookupDetector(), PropertyNameDetector())


def analyze_unit(unit: CompilationUnit, ctx: AnalysisContext,
                 detectors: Iterable[Detector] = DEFAULT_DETECTORS) -> List[ReflectionSite]:
    detectors = tuple(detectors)
    sites = []
    for load in vault_loads(unit, ctx.vaults):
        for det in detectors:
            site = det.inspect(load, ctx)
            if site is not None:
                sites.append(site)
    return sites


# ═══════════════════════════════════════════════════════════════════════════════
#  A G G R E G A T I O N
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class Aggregate:
    records: Dict[Key, PatchRecord] = field(default_factory=dict)
    unresolved: Set[Key] = field(default_factory=set)
    conflicts: int = 0

    def value(self, cls_desc: str, field_name: str) -> Optional[str]:
        rec = self.records.get((cls_desc, field_name))
        return rec.value if rec else None

    def by_origin(self, origin: str) -> List[PatchRecord]:
        return [r for r in self.records.values() if r.origin == origin]


def aggregate(sites: Iterable[ReflectionSite],
              vault_units: Iterable[CompilationUnit] = (),
              overrides: Optional[OverrideMap] = None) -> Aggregate:
    sites = list(sites)
    agg = Aggregate()
    ranked = sorted((s for s in sites if s.value is not None),
                    key=lambda s: (s.priority, s.unit, s.line))
    for s in ranked:
        held = agg.records.get(s.key)
        if held is not None:
            if held.value != s.value:
                agg.conflicts += 1
            continue
        agg.records[s.key] = PatchRecord(s.vault_class, s.field, s.value, s.rule, s.target_unit)

    if overrides:
        for unit in vault_units:
            for f in unit.string_fields:
                key = (unit.descriptor, f.name)
                if key in agg.records:
                    continue
                value = overrides.lookup(*key)
                if value is not None:
                    agg.records[key] = PatchRecord(key[0], key[1], value, ORIGIN_OVERRIDE, "")

    agg.unresolved = {s.key for s in sites} - set(agg.records)
    return agg
