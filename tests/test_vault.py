from vaultpatch.config import Settings
from vaultpatch.detectors import Aggregate
from vaultpatch.rewrite import rewrite_initializer
from vaultpatch.smali import CompilationUnit
from vaultpatch.vault import classify, is_generated_initializer, vault_classes

from conftest import VAULT, field_names, vault_source

HELPER = """

.method public static a()V
    .locals 0

    return-void
.end method
"""

LITERAL = """

.method public static b()Ljava/lang/String;
    .locals 1

    const-string v0, "hello"

    return-object v0
.end method
"""


def unit(text):
    return CompilationUnit(None, text)


def test_classifier_precision():
    fixtures = {
        "vault": unit(vault_source(field_names(21))),
        "vault_with_helper": unit(vault_source(field_names(30), desc="Lcom/x/a;", extra=HELPER)),
        "at_threshold": unit(vault_source(field_names(20), desc="Lcom/x/b;")),
        "literal": unit(vault_source(field_names(25), desc="Lcom/x/c;", extra=LITERAL)),
        "debug_source": unit(vault_source(field_names(25), desc="Lcom/x/d;")
                             .replace(".super Ljava/lang/Object;",
                                      '.super Ljava/lang/Object;\n.source "D.java"')),
        "too_many_methods": unit(vault_source(field_names(25), desc="Lcom/x/e;",
                                              extra=HELPER + HELPER.replace(" a()V", " c()V")
                                              + HELPER.replace(" a()V", " d()V"))),
    }
    found = {name for name, u in fixtures.items() if classify(u)}
    assert found == {"vault", "vault_with_helper"}
    assert len(vault_classes(fixtures.values())) == 2


def test_thresholds_come_from_settings():
    u = unit(vault_source(["a", "b", "c"]))
    assert not classify(u)
    assert classify(u, Settings(vault_min_fields=2))


def test_patched_vault_is_still_a_vault():
    u = unit(vault_source(field_names(21)))
    rewrite_initializer(u, Aggregate())
    clinit = u.method("<clinit>")
    assert is_generated_initializer(u, clinit)
    assert classify(u)


def test_foreign_initializer_is_not_generated():
    text = vault_source(field_names(21)) + """
.method static constructor <clinit>()V
    .locals 1

    const-string v0, "x"

    sput-object v0, Lcom/other/Z;->f0:Ljava/lang/String;

    return-void
.end method
"""
    u = unit(text)
    assert not is_generated_initializer(u, u.method("<clinit>"))
    assert not classify(u)
    assert u.descriptor == VAULT


def test_generated_initializer_does_not_count_as_a_method():
    two = HELPER + HELPER.replace(" a()V", " c()V")
    u = unit(vault_source(field_names(21), extra=two))
    assert classify(u)
    rewrite_initializer(u, Aggregate())
    assert len(u.methods) == 3
    assert classify(u)
