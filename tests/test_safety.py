import pytest

from vaultpatch import safety
from vaultpatch.errors import StructuralMismatch
from vaultpatch.smali import CompilationUnit

from conftest import write_smali

APPLICATION = """\
.class public Lcom/pairip/application/Application;
.super Landroid/app/Application;


# virtual methods
.method protected attachBaseContext(Landroid/content/Context;)V
    .locals 0

    invoke-super {p0, p1}, Landroid/app/Application;->attachBaseContext(Landroid/content/Context;)V

    return-void
.end method
"""


def test_handler_source_parses():
    unit = CompilationUnit(None, safety.HANDLER_SOURCE)
    assert unit.descriptor == safety.HANDLER_CLASS
    assert [m.name for m in unit.methods] == ["<init>", "uncaughtException"]


def test_hook_installs_after_super_call():
    unit = CompilationUnit(None, APPLICATION)
    assert safety.hook_application(unit)
    body = [l.strip() for l in unit.body(unit.method("attachBaseContext")) if l.strip()]
    assert body[0] == ".locals 2"
    assert body[1].startswith("invoke-super {p0, p1}")
    assert body[2:7] == safety.install_lines(0)
    assert body[-1] == "return-void"

    once = unit.render()
    assert not safety.hook_application(unit)
    assert unit.render() == once


def test_hook_keeps_locals_live_across_super_call():
    text = APPLICATION.replace("    .locals 0\n", '    .locals 1\n\n    const-string v0, "tag"\n').replace(
        "    return-void\n",
        "    invoke-static {v0}, Lcom/app/Log;->d(Ljava/lang/String;)V\n\n    return-void\n")
    unit = CompilationUnit(None, text)
    assert safety.hook_application(unit)
    body = [l.strip() for l in unit.body(unit.method("attachBaseContext")) if l.strip()]
    assert body[0] == ".locals 3"
    load = body.index('const-string v0, "tag"')
    use = body.index("invoke-static {v0}, Lcom/app/Log;->d(Ljava/lang/String;)V")
    between = body[load + 1:use]
    assert between[1:] == safety.install_lines(1)
    assert "move-result-object v1" in between
    assert not any(l.split(",")[0].endswith(" v0") for l in between)


def test_hook_counts_registers_directive():
    unit = CompilationUnit(None, APPLICATION.replace(".locals 0", ".registers 3"))
    assert safety.hook_application(unit)
    body = [l.strip() for l in unit.body(unit.method("attachBaseContext")) if l.strip()]
    assert body[0] == ".registers 5"
    assert body[2:7] == safety.install_lines(1)


def test_hook_needs_low_registers():
    unit = CompilationUnit(None, APPLICATION.replace(".locals 0", ".locals 15"))
    with pytest.raises(StructuralMismatch, match="registers"):
        safety.hook_application(unit)


def test_hook_requires_super_call():
    unit = CompilationUnit(None, APPLICATION.replace(
        "    invoke-super {p0, p1}, Landroid/app/Application;->attachBaseContext(Landroid/content/Context;)V\n", ""))
    with pytest.raises(StructuralMismatch, match="invoke-super"):
        safety.hook_application(unit)


def test_hook_requires_method():
    unit = CompilationUnit(None, APPLICATION.replace("attachBaseContext(Landroid/content/Context;)V\n    .locals",
                                                     "onCreate()V\n    .locals"))
    with pytest.raises(StructuralMismatch, match="method not found"):
        safety.hook_application(unit)


def test_handler_written_next_to_application(tmp_path):
    app_path = write_smali(tmp_path, safety.APPLICATION_CLASS, APPLICATION)
    app = CompilationUnit(app_path, APPLICATION)
    target = safety.handler_path(tmp_path, app)
    assert target == app_path.parent / "SafeExceptionHandler.smali"
    assert safety.write_handler(target)
    assert not safety.write_handler(target)
    assert target.read_text() == safety.HANDLER_SOURCE


def test_protected_classes():
    assert safety.protected_classes() == {safety.HANDLER_CLASS, safety.APPLICATION_CLASS}
