"""Recover vault strings in disassembled apps and keep the result crash-safe."""

from .config import OverrideMap, Settings
from .detectors import PatchRecord, ReflectionSite, aggregate, analyze_unit
from .errors import (BinaryFormatError, ParseError, StructuralMismatch, SymbolMismatch,
                     VaultpatchError)
from .native import SymbolSet, exported_symbols, substitute_binary, verify
from .pipeline import PatchReport, TreePatcher, patch_release, patch_tree
from .smali import CompilationUnit, iter_units, load_units, parse_unit
from .vault import classify

__version__ = "0.1.0"
