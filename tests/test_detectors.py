import pytest

from vaultpatch.config import OverrideMap, Settings
from vaultpatch.detectors import (AnalysisContext, ORIGIN_FIELD_UPDATER, ORIGIN_OVERRIDE,
                                  ORIGIN_PROPERTY, ORIGIN_REFLECTIVE, ReflectionSite, aggregate,
                                  analyze_unit)
from vaultpatch.smali import CompilationUnit, class_index

from conftest import (VAULT, counter_source, property_consumer, updater_consumer,
                      vault_source)

COUNTER = "Lcom/app/Counter;"


def analyze(*texts, settings=None):
    units = [CompilationUnit(None, t) for t in texts]
    ctx = AnalysisContext(class_index(units), {VAULT}, settings or Settings())
    return [s for u in units for s in analyze_unit(u, ctx)], units


@pytest.mark.parametrize("volatile, expected", [
    (("count",), "count"),
    ((), None),
    (("count", "state"), None),
])
def test_field_updater_needs_one_volatile_field(volatile, expected):
    sites, _ = analyze(vault_source(["a", "b", "c"]),
                       updater_consumer("Lcom/app/Consumer;", COUNTER, "b"),
                       counter_source(COUNTER, volatile=volatile))
    updater = [s for s in sites if s.rule == ORIGIN_FIELD_UPDATER]
    assert len(updater) == 1
    assert updater[0].key == (VAULT, "b")
    assert updater[0].register == "v1"
    assert updater[0].value == expected

    agg = aggregate(sites)
    assert agg.value(VAULT, "b") == expected
    if expected is None:
        assert (VAULT, "b") in agg.unresolved


def test_field_updater_target_must_be_indexed():
    sites, _ = analyze(updater_consumer("Lcom/app/Consumer;", "Lcom/lib/Unknown;", "a"))
    assert [s.value for s in sites] == [None]


def test_property_name():
    sites, _ = analyze(property_consumer("Lcom/app/Model$refs;", "a",
                                         '"getSomething()Ljava/lang/String;"'))
    assert [(s.rule, s.value) for s in sites] == [(ORIGIN_PROPERTY, "something")]


@pytest.mark.parametrize("literal, expected", [
    ('"getSomething()"', "something"),
    ('"getURL()Ljava/lang/CharSequence;"', "uRL"),
    ('"getCount()I"', None),
    ('"getName(I)Ljava/lang/String;"', None),
    ('"something"', None),
])
def test_property_literal_shapes(literal, expected):
    sites, _ = analyze(property_consumer("Lcom/app/M;", "a", literal))
    values = [s.value for s in sites if s.rule == ORIGIN_PROPERTY]
    assert values == ([expected] if expected else [])


def test_clobbered_register_ends_the_window():
    sites, _ = analyze(property_consumer("Lcom/app/M;", "a", '"getSomething()"',
                                         between="\n    const/4 v2, 0x0\n"))
    assert sites == []


def test_window_is_bounded():
    filler = "".join("\n    nop\n" for _ in range(12))
    sites, _ = analyze(property_consumer("Lcom/app/M;", "a", '"getSomething()"', between=filler))
    assert sites == []


@pytest.mark.parametrize("nops, found", [(9, True), (10, False)])
def test_lookahead_counts_instructions_after_the_load(nops, found):
    filler = "".join("    nop\n\n" for _ in range(nops))
    consumer = updater_consumer("Lcom/app/Consumer;", COUNTER, "b").replace(
        "    invoke-static {v0, v1}", filler + "    invoke-static {v0, v1}")
    sites, _ = analyze(consumer, counter_source(COUNTER),
                       settings=Settings(reflection_lookahead=10))
    assert bool([s for s in sites if s.rule == ORIGIN_FIELD_UPDATER]) is found


def test_reflective_lookup_is_recorded_unresolved():
    text = f"""\
.class public Lcom/app/Loader;
.super Ljava/lang/Object;

.method public static load()Ljava/lang/Class;
    .locals 1

    sget-object v0, {VAULT}->c:Ljava/lang/String;

    invoke-static {{v0}}, Ljava/lang/Class;->forName(Ljava/lang/String;)Ljava/lang/Class;

    move-result-object v0

    return-object v0
.end method
"""
    sites, _ = analyze(text)
    assert [(s.rule, s.value) for s in sites] == [(ORIGIN_REFLECTIVE, None)]
    agg = aggregate(sites)
    assert agg.records == {}
    assert agg.unresolved == {(VAULT, "c")}


def site(rule, priority, value, unit="u", line=1, field="a"):
    return ReflectionSite(unit, line, "v0", VAULT, field, value, rule, priority)


def test_aggregate_priority_then_path_then_line():
    agg = aggregate([
        site(ORIGIN_PROPERTY, 2, "fromProperty", unit="a"),
        site(ORIGIN_FIELD_UPDATER, 0, "fromUpdater", unit="z"),
        site(ORIGIN_FIELD_UPDATER, 0, "later", unit="z", line=9),
        site(ORIGIN_FIELD_UPDATER, 0, "fromUpdater", unit="zz"),
    ])
    rec = agg.records[(VAULT, "a")]
    assert (rec.value, rec.origin) == ("fromUpdater", ORIGIN_FIELD_UPDATER)
    assert agg.conflicts == 2


def test_aggregate_is_order_independent():
    sites = [site(ORIGIN_PROPERTY, 2, "p", unit="b"), site(ORIGIN_PROPERTY, 2, "q", unit="a")]
    assert aggregate(sites).value(VAULT, "a") == aggregate(sites[::-1]).value(VAULT, "a") == "q"


def test_overrides_only_fill_uncommitted_fields():
    vault = CompilationUnit(None, vault_source(["a", "b", "c"]))
    overrides = OverrideMap("1", {f"{VAULT}->a": "ignored", "b": "bare", f"{VAULT}->b": "exact"})
    agg = aggregate([site(ORIGIN_PROPERTY, 2, "inferred", field="a")], [vault], overrides)
    assert agg.value(VAULT, "a") == "inferred"
    assert agg.value(VAULT, "b") == "exact"
    assert agg.records[(VAULT, "b")].origin == ORIGIN_OVERRIDE
    assert agg.value(VAULT, "c") is None


def test_loads_from_other_classes_are_ignored():
    sites, _ = analyze(property_consumer("Lcom/app/M;", "a", '"getSomething()"',
                                         vault="Lcom/other/NotVault;"))
    assert sites == []
