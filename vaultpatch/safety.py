"""
Process-wide safety net.

Emits an UncaughtExceptionHandler that forwards main-thread crashes to the
previous handler and logs and swallows background-thread ones, then installs
it from the protected Application's attachBaseContext. Both classes are
excluded from region injection.
"""

from pathlib import Path
from typing import List, Optional

from .errors import StructuralMismatch
from .rewrite import IND, ensure_locals, param_registers, refind, register_directive
from .smali import CompilationUnit

HANDLER_CLASS = "Lcom/pairip/application/SafeExceptionHandler;"
APPLICATION_CLASS = "Lcom/pairip/application/Application;"
HOOK_METHOD = "attachBaseContext"

_UEH = "Ljava/lang/Thread$UncaughtExceptionHandler;"

HANDLER_SOURCE = f"""\
.class public {HANDLER_CLASS}
.super Ljava/lang/Object;
.implements {_UEH}


# instance fields
.field private final originalHandler:{_UEH}


# direct methods
.method public constructor <init>({_UEH})V
    .locals 0

    invoke-direct {{p0}}, Ljava/lang/Object;-><init>()V

    iput-object p1, p0, {HANDLER_CLASS}->originalHandler:{_UEH}

    return-void
.end method


# virtual methods
.method public uncaughtException(Ljava/lang/Thread;Ljava/lang/Throwable;)V
    .locals 3

    invoke-static {{}}, Landroid/os/Looper;->getMainLooper()Landroid/os/Looper;

    move-result-object v0

    invoke-virtual {{v0}}, Landroid/os/Looper;->getThread()Ljava/lang/Thread;

    move-result-object v0

    if-ne p1, v0, :not_main_thread

    iget-object v0, p0, {HANDLER_CLASS}->originalHandler:{_UEH}

    if-eqz v0, :no_handler

    invoke-interface {{v0, p1, p2}}, {_UEH}->uncaughtException(Ljava/lang/Thread;Ljava/lang/Throwable;)V

    :no_handler
    return-void

    :not_main_thread
    const-string v0, "SafeExceptionHandler"

    new-instance v1, Ljava/lang/StringBuilder;

    invoke-direct {{v1}}, Ljava/lang/StringBuilder;-><init>()V

    const-string v2, "Caught exception on background thread: "

    invoke-virtual {{v1, v2}}, Ljava/lang/StringBuilder;->append(Ljava/lang/String;)Ljava/lang/StringBuilder;

    invoke-virtual {{p1}}, Ljava/lang/Thread;->getName()Ljava/lang/String;

    move-result-object v2

    invoke-virtual {{v1, v2}}, Ljava/lang/StringBuilder;->append(Ljava/lang/String;)Ljava/lang/StringBuilder;

    invoke-virtual {{v1}}, Ljava/lang/StringBuilder;->toString()Ljava/lang/String;

    move-result-object v1

    invoke-static {{v0, v1, p2}}, Landroid/util/Log;->w(Ljava/lang/String;Ljava/lang/String;Ljava/lang/Throwable;)I

    return-void
.end method
"""


def install_lines(first: int) -> List[str]:
    """Install sequence using v<first> and v<first + 1>."""
    old, new = f"v{first}", f"v{first + 1}"
    return [
        f"invoke-static {{}}, Ljava/lang/Thread;->getDefaultUncaughtExceptionHandler(){_UEH}",
        f"move-result-object {old}",
        f"new-instance {new}, {HANDLER_CLASS}",
        f"invoke-direct {{{new}, {old}}}, {HANDLER_CLASS}-><init>({_UEH})V",
        f"invoke-static {{{new}}}, Ljava/lang/Thread;->setDefaultUncaughtExceptionHandler({_UEH})V",
    ]


def protected_classes() -> frozenset:
    return frozenset({HANDLER_CLASS, APPLICATION_CLASS})


def handler_path(root: Path, app_unit: Optional[CompilationUnit]) -> Path:
    """Next to the Application class when it exists, else under <root>/smali."""
    rel = Path(*HANDLER_CLASS[1:-1].split("/")).with_suffix(".smali")
    if app_unit is not None and app_unit.path is not None:
        return app_unit.path.parent / rel.name
    base = Path(root) / "smali" if (Path(root) / "smali").is_dir() else Path(root)
    return base / rel


def write_handler(path: Path) -> bool:
    """Write the handler unit; False when it is already present and identical."""
    path = Path(path)
    if path.exists() and path.read_text(encoding="utf-8") == HANDLER_SOURCE:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(HANDLER_SOURCE, encoding="utf-8")
    return True


def hook_application(unit: CompilationUnit) -> bool:
    """
    Install the handler right after attachBaseContext's invoke-super. Idempotent.
    The sequence uses two registers above the method's existing locals, so
    values live across the super call are left alone.
    """
    method = unit.method(HOOK_METHOD, f"{HOOK_METHOD}(Landroid/content/Context;)V")
    if method is None:
        raise StructuralMismatch(unit.descriptor, HOOK_METHOD, "method not found")
    marker = f"{HANDLER_CLASS}-><init>"
    if any(marker in l for l in unit.body(method)):
        return False
    supers = [i for i in unit.instructions(method) if i.op.startswith("invoke-super")]
    if not supers:
        raise StructuralMismatch(unit.descriptor, HOOK_METHOD, "no invoke-super call")
    found = register_directive(unit, method)
    if found is None:
        raise StructuralMismatch(unit.descriptor, HOOK_METHOD, "no .locals/.registers directive")
    _, kind, count = found
    first = count if kind == "locals" else count - param_registers(method)
    # invoke-direct takes 4-bit register numbers
    if first + 1 > 15:
        raise StructuralMismatch(unit.descriptor, HOOK_METHOD, f"no free low registers ({first} locals)")
    ensure_locals(unit, method, first + 2)
    method = refind(unit, method)
    at = [i for i in unit.instructions(method) if i.op.startswith("invoke-super")][0].index + 1
    lines: List[str] = [""] + [f"{IND}{l}" for l in install_lines(first)]
    unit.insert(at, lines)
    return True
