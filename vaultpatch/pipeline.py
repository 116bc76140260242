"""
pipeline.py  ─  stage orchestration
═══════════════════════════════════════════════════════════════════════════════
  1  load        parse every unit (thread pool, path order)
  2  classify    find vault classes
  3  analyze     run detectors over every unit (thread pool, read-only)
  4  aggregate   single barrier: one conflict-resolved value per (class, field)
  5  apply       initializers, stubs, guards, call sites, regions, safety net
  6  write       changed units only (thread pool, distinct files)

Optional native / asset / manifest steps run after the tree is written.
The whole run is re-runnable over its own output: a second pass writes
nothing.
"""

import json
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from . import safety
from .assets import reconcile
from .config import OverrideMap, Settings
from .detectors import (Aggregate, AnalysisContext, DEFAULT_DETECTORS, ORIGIN_FIELD_UPDATER,
                        ORIGIN_OVERRIDE, ORIGIN_PROPERTY, aggregate, analyze_unit)
from .errors import SymbolMismatch
from .log import info, ok, warn
from .manifest import CRASH_PRONE_PROVIDERS, disable_components, drop_split_requirements
from .native import CRASH_PRONE_LIBS, prune_native_libs
from .rewrite import (CallSiteTarget, CipherStorageRule, MethodShapeRule, RegionRule,
                      StaticInitRule, StubTarget, apply_stubs, guard_field_lookup,
                      inject_regions, rewrite_initializer, wrap_call_sites)
from .smali import CompilationUnit, class_index, load_units
from .vault import vault_classes, vault_descriptors

DEFAULT_RULES: Tuple[RegionRule, ...] = (
    MethodShapeRule("method-call", method_name="onMethodCall", ret="V",
                    exclude=("Lio/flutter/",)),
    StaticInitRule("crypto-init", ("KeysetHandle", "TinkConfig", "RegistryConfiguration")),
    CipherStorageRule(),
)

DEFAULT_CALL_SITES: Tuple[CallSiteTarget, ...] = (
    CallSiteTarget("Lio/embrace/android/embracesdk/Embrace;->start(",
                   exclude="Lio/embrace/"),
)

DEFAULT_STUBS: Tuple[StubTarget, ...] = (
    StubTarget("Lcom/pairip/VMRunner;", "<clinit>"),
    StubTarget("Lcom/pairip/VMRunner;", "invoke"),
    StubTarget("Lcom/pairip/StartupLauncher;", "launch"),
    StubTarget("Lcom/pairip/SignatureCheck;", "verifyIntegrity"),
    StubTarget("Landroidx/core/app/CoreComponentFactory;", "<clinit>"),
)


@dataclass
class PatchReport:
    vault_classes: int = 0
    vault_classes_initialized: int = 0
    reflection_inferred: int = 0
    property_inferred: int = 0
    override_values: int = 0
    defaults: int = 0
    unresolved: int = 0
    conflicts: int = 0
    regions_injected: int = 0
    call_sites_wrapped: int = 0
    guards_injected: int = 0
    methods_stubbed: int = 0
    asset_entries_added: int = 0
    components_disabled: int = 0
    split_requirements_dropped: int = 0
    libs_removed: int = 0
    files_written: int = 0
    skipped: List[str] = field(default_factory=list)
    commits: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def summary(self) -> str:
        return (f"vaults {self.vault_classes} ({self.vault_classes_initialized} initialized), "
                f"inferred {self.reflection_inferred} reflection / {self.property_inferred} property, "
                f"{self.override_values} override, {self.defaults} default, "
                f"{self.regions_injected} regions, {self.files_written} files written")


def _safe(fn, *a) -> int:
    """Run one per-file step; log and count zero on failure. SymbolMismatch propagates."""
    try:
        result = fn(*a)
        return result if result is not None else 0
    except SymbolMismatch:
        raise
    except Exception as exc:
        warn(f"    step skipped ({fn.__name__}): {exc}")
        return 0


@dataclass
class _UnitCounts:
    stubbed: int = 0
    guards: int = 0
    call_sites: int = 0
    regions: int = 0


class TreePatcher:
    """
    Runs stages 1-6 over one disassembled tree.

    Rules, call-site targets and stub targets default to the known protection
    runtime; pass empty tuples to turn a step off.
    """

    def __init__(self, root, settings: Optional[Settings] = None,
                 overrides: Optional[OverrideMap] = None,
                 detectors=DEFAULT_DETECTORS,
                 rules: Sequence[RegionRule] = DEFAULT_RULES,
                 call_sites: Sequence[CallSiteTarget] = DEFAULT_CALL_SITES,
                 stubs: Sequence[StubTarget] = DEFAULT_STUBS,
                 safety_net: bool = True):
        self.root = Path(root)
        self.settings = settings or Settings()
        self.overrides = overrides if overrides is not None else self.settings.load_overrides()
        self.detectors = tuple(detectors)
        self.rules = tuple(rules)
        self.call_sites = tuple(call_sites)
        self.stubs = tuple(stubs)
        self.safety_net = safety_net
        self.report = PatchReport()
        self.units: List[CompilationUnit] = []
        self.aggregate: Optional[Aggregate] = None

    # ── stages ───────────────────────────────────────────────────────────────
    def load(self) -> List[CompilationUnit]:
        skipped: List[Path] = []
        self.units = load_units(self.root, self.settings.workers, skipped)
        self.report.skipped.extend(str(p) for p in skipped)
        return self.units

    def analyze(self, vaults: List[CompilationUnit]) -> Aggregate:
        ctx = AnalysisContext(class_index(self.units), vault_descriptors(vaults), self.settings)
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            per_unit = list(pool.map(lambda u: analyze_unit(u, ctx, self.detectors), self.units))
        sites = [s for batch in per_unit for s in batch]
        info(f"  {len(sites)} reflection sites in {sum(1 for b in per_unit if b)} units")
        self.aggregate = aggregate(sites, vaults, self.overrides)
        return self.aggregate

    def _initialize_vaults(self, vaults: List[CompilationUnit], agg: Aggregate) -> None:
        r = self.report
        for unit in vaults:
            before = unit.render()
            try:
                _, defaults = rewrite_initializer(unit, agg)
            except Exception as exc:
                warn(f"    initializer skipped ({unit.descriptor}): {exc}")
                continue
            r.defaults += defaults
            if unit.render() != before:
                r.vault_classes_initialized += 1

    def _patch_unit(self, unit: CompilationUnit, protected: Set[str]) -> _UnitCounts:
        c = _UnitCounts()
        c.stubbed = _safe(apply_stubs, unit, self.stubs)
        c.guards = _safe(guard_field_lookup, unit)
        for target in self.call_sites:
            c.call_sites += _safe(wrap_call_sites, unit, target)
        if self.rules:
            c.regions = _safe(inject_regions, unit, self.rules, protected)
        return c

    def _install_safety_net(self) -> int:
        app = class_index(self.units).get(safety.APPLICATION_CLASS)
        if app is None:
            info(f"  {safety.APPLICATION_CLASS} not present, safety net skipped")
            return 0
        written = 0
        if safety.write_handler(safety.handler_path(self.root, app)):
            ok(f"  Wrote {safety.HANDLER_CLASS}")
            written += 1
        if _safe(safety.hook_application, app):
            ok(f"  Hooked {safety.APPLICATION_CLASS}->{safety.HOOK_METHOD}")
        return written

    def _write(self) -> int:
        dirty = [u for u in self.units if u.dirty]
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            return sum(pool.map(lambda u: 1 if _safe(u.write) else 0, dirty))

    # ── driver ───────────────────────────────────────────────────────────────
    def run(self) -> PatchReport:
        r = self.report
        info(f"[1/6] Loading units from {self.root}")
        self.load()

        info("[2/6] Classifying vault classes")
        vaults = vault_classes(self.units, self.settings)
        r.vault_classes = len(vaults)
        (ok if vaults else warn)(f"  Vault classes: {len(vaults)}")

        info("[3/6] Analyzing reflection sites")
        info("[4/6] Aggregating")
        agg = self.analyze(vaults)
        r.reflection_inferred = len(agg.by_origin(ORIGIN_FIELD_UPDATER))
        r.property_inferred = len(agg.by_origin(ORIGIN_PROPERTY))
        r.override_values = len(agg.by_origin(ORIGIN_OVERRIDE))
        r.unresolved = len(agg.unresolved)
        r.conflicts = agg.conflicts
        r.commits = [{"class": rec.vault_class, "field": rec.field,
                      "value": rec.value, "origin": rec.origin}
                     for rec in sorted(agg.records.values(),
                                       key=lambda rec: (rec.vault_class, rec.field))]

        info("[5/6] Applying patches")
        self._initialize_vaults(vaults, agg)
        protected = set(safety.protected_classes()) | vault_descriptors(vaults)
        protected |= {t.cls for t in self.stubs}
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            counts = list(pool.map(lambda u: self._patch_unit(u, protected), self.units))
        r.methods_stubbed = sum(c.stubbed for c in counts)
        r.guards_injected = sum(c.guards for c in counts)
        r.call_sites_wrapped = sum(c.call_sites for c in counts)
        r.regions_injected = sum(c.regions for c in counts)
        (ok if r.regions_injected else warn)(f"  Exception regions: {r.regions_injected}")

        extra = self._install_safety_net() if self.safety_net else 0

        info("[6/6] Writing units")
        r.files_written = self._write() + extra
        (ok if r.files_written else warn)(f"  Files written: {r.files_written}")
        ok(f"  {r.summary()}")
        return r


def patch_tree(root, settings: Optional[Settings] = None,
               overrides: Optional[OverrideMap] = None, **kw) -> PatchReport:
    return TreePatcher(root, settings, overrides, **kw).run()


def patch_release(root, settings: Optional[Settings] = None,
                  binary: Optional[Path] = None, asset_manifest: Optional[Path] = None,
                  assets_root: Optional[Path] = None,
                  android_manifest: Optional[Path] = None,
                  lib_root: Optional[Path] = None) -> PatchReport:
    """
    Tree patch plus the optional outer steps, each run only when its input is
    given. A failing outer step is logged and counted as zero.
    """
    s = settings or Settings()
    report = patch_tree(root, s)
    if binary is not None and asset_manifest is not None:
        report.asset_entries_added = _safe(reconcile, binary, asset_manifest, s, assets_root)
    if android_manifest is not None:
        report.components_disabled = _safe(disable_components, android_manifest,
                                           CRASH_PRONE_PROVIDERS)
        report.split_requirements_dropped = _safe(drop_split_requirements, android_manifest)
    if lib_root is not None:
        report.libs_removed = len(_safe(prune_native_libs, lib_root, CRASH_PRONE_LIBS) or ())
    return report
