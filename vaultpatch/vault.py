"""
Vault classifier.

A vault is a class whose only job is to hold a large number of static String
fields that the protection runtime fills in at startup. Structural signature:

  - more than Settings.vault_min_fields static String fields
  - at most Settings.vault_max_methods methods, not counting a generated
    initializer
  - no string literals (a previously generated initializer does not count)
  - no .source debug annotation

A false positive costs an extra class initialised to empty strings.
"""

from typing import Iterable, List, Optional, Set

from .config import Settings
from .smali import CompilationUnit, Method

LITERAL_OPS = frozenset({"const-string", "const-string/jumbo"})
DEBUG_SOURCE = ".source"
_INITIALIZER_OPS = LITERAL_OPS | {"sput-object", "return-void"}


def is_generated_initializer(unit: CompilationUnit, method: Method) -> bool:
    """<clinit> made only of literal loads stored into the unit's own fields."""
    if method.name != "<clinit>":
        return False
    insns = unit.instructions(method)
    if not insns:
        return False
    own = unit.descriptor + "->"
    for insn in insns:
        if insn.op not in _INITIALIZER_OPS:
            return False
        if insn.op == "sput-object" and own not in insn.operands:
            return False
    return True


def has_literals(unit: CompilationUnit) -> bool:
    for method in unit.methods:
        if is_generated_initializer(unit, method):
            continue
        if any(insn.op in LITERAL_OPS for insn in unit.instructions(method)):
            return True
    return False


def classify(unit: CompilationUnit, settings: Optional[Settings] = None) -> bool:
    s = settings or Settings()
    if len(unit.string_fields) <= s.vault_min_fields:
        return False
    own = [m for m in unit.methods if not is_generated_initializer(unit, m)]
    if len(own) > s.vault_max_methods:
        return False
    if unit.has_directive(DEBUG_SOURCE):
        return False
    return not has_literals(unit)


def vault_classes(units: Iterable[CompilationUnit],
                  settings: Optional[Settings] = None) -> List[CompilationUnit]:
    return [u for u in units if classify(u, settings)]


def vault_descriptors(vaults: Iterable[CompilationUnit]) -> Set[str]:
    return {u.descriptor for u in vaults}
