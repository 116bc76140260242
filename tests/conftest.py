import struct
from pathlib import Path

import pytest

from vaultpatch.config import Settings

VAULT = "Lcom/pairip/v;"


def unit_path(root: Path, desc: str, folder: str = "smali") -> Path:
    return root / folder / (desc[1:-1] + ".smali")


def write_smali(root: Path, desc: str, text: str, folder: str = "smali") -> Path:
    path = unit_path(root, desc, folder)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def vault_source(fields, desc: str = VAULT, extra: str = "") -> str:
    out = [f".class public final {desc}", ".super Ljava/lang/Object;", "", "", "# static fields"]
    for name in fields:
        out.append(f".field public static {name}:Ljava/lang/String;")
        out.append("")
    return "\n".join(out) + extra + "\n"


def field_names(n):
    return [f"f{i}" for i in range(n)]


def counter_source(desc: str, volatile=("count",), plain=("name",)) -> str:
    out = [f".class public {desc}", ".super Ljava/lang/Object;", '.source "Counter.java"', "",
           "", "# instance fields"]
    for name in volatile:
        out.append(f".field private volatile {name}:I")
        out.append("")
    for name in plain:
        out.append(f".field private {name}:Ljava/lang/String;")
        out.append("")
    return "\n".join(out) + "\n"


UPDATER = ("Ljava/util/concurrent/atomic/AtomicIntegerFieldUpdater;->newUpdater"
           "(Ljava/lang/Class;Ljava/lang/String;)"
           "Ljava/util/concurrent/atomic/AtomicIntegerFieldUpdater;")


def updater_consumer(desc: str, target: str, field: str, vault: str = VAULT) -> str:
    return f"""\
.class public {desc}
.super Ljava/lang/Object;
.source "Consumer.java"


# static fields
.field static final U:Ljava/util/concurrent/atomic/AtomicIntegerFieldUpdater;


# direct methods
.method static constructor <clinit>()V
    .locals 2

    const-class v0, {target}

    sget-object v1, {vault}->{field}:Ljava/lang/String;

    invoke-static {{v0, v1}}, {UPDATER}

    move-result-object v0

    sput-object v0, {desc}->U:Ljava/util/concurrent/atomic/AtomicIntegerFieldUpdater;

    return-void
.end method
"""


def property_consumer(desc: str, field: str, literal: str, vault: str = VAULT,
                      between: str = "") -> str:
    return f"""\
.class public final {desc}
.super Ljava/lang/Object;
.source "Model.kt"


# direct methods
.method public static refs()V
    .locals 4

    new-instance v0, Lkotlin/jvm/internal/PropertyReference1Impl;

    const-class v1, Lcom/app/Model;

    sget-object v2, {vault}->{field}:Ljava/lang/String;
{between}
    const-string v3, {literal}

    invoke-direct {{v0, v1, v2, v3}}, Lkotlin/jvm/internal/PropertyReference1Impl;-><init>(Ljava/lang/Class;Ljava/lang/String;Ljava/lang/String;)V

    return-void
.end method
"""


@pytest.fixture
def settings():
    return Settings(workers=2)


@pytest.fixture
def small_vault_settings():
    """Three-field vaults count as vaults."""
    return Settings(vault_min_fields=2, workers=2)


# ═══════════════════════════════════════════════════════════════════════════════
#  minimal ELF64 shared object: .text .rodata .dynstr .dynsym .shstrtab
# ═══════════════════════════════════════════════════════════════════════════════

_SYM = "<IBBHQQ"
_SHDR = "<IIQQQQIIQQ"
STB_GLOBAL_FUNC = (1 << 4) | 2
STB_GLOBAL_OBJECT = (1 << 4) | 1
STB_LOCAL_FUNC = 2


def build_elf(exports=(), undefined=(), objects=(), local=(), rodata: bytes = b"") -> bytes:
    dynstr = b"\0"
    offs = {}
    for name in list(exports) + list(undefined) + list(objects) + list(local):
        offs[name] = len(dynstr)
        dynstr += name.encode() + b"\0"

    syms = [struct.pack(_SYM, 0, 0, 0, 0, 0, 0)]
    syms += [struct.pack(_SYM, offs[n], STB_LOCAL_FUNC, 0, 1, 0x1000, 4) for n in local]
    first_global = len(syms)
    syms += [struct.pack(_SYM, offs[n], STB_GLOBAL_FUNC, 0, 1, 0x1000, 4) for n in exports]
    syms += [struct.pack(_SYM, offs[n], STB_GLOBAL_FUNC, 0, 0, 0, 0) for n in undefined]
    syms += [struct.pack(_SYM, offs[n], STB_GLOBAL_OBJECT, 0, 2, 0x2000, 4) for n in objects]
    dynsym = b"".join(syms)

    text = b"\xc0\x03\x5f\xd6" * 4
    shstrtab, name_off = b"\0", [0]
    for n in (b".text", b".rodata", b".dynstr", b".dynsym", b".shstrtab"):
        name_off.append(len(shstrtab))
        shstrtab += n + b"\0"

    body, offset, placed = b"", 64, []
    for blob in (text, rodata, dynstr, dynsym, shstrtab):
        pad = -offset % 8
        body += b"\0" * pad
        offset += pad
        placed.append(offset)
        body += blob
        offset += len(blob)
    pad = -offset % 8
    body += b"\0" * pad
    shoff = offset + pad

    shdrs = [
        struct.pack(_SHDR, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0),
        struct.pack(_SHDR, name_off[1], 1, 0x6, 0x1000, placed[0], len(text), 0, 0, 4, 0),
        struct.pack(_SHDR, name_off[2], 1, 0x2, 0x2000, placed[1], len(rodata), 0, 0, 1, 0),
        struct.pack(_SHDR, name_off[3], 3, 0x2, 0, placed[2], len(dynstr), 0, 0, 1, 0),
        struct.pack(_SHDR, name_off[4], 11, 0x2, 0, placed[3], len(dynsym), 3, first_global, 8, 24),
        struct.pack(_SHDR, name_off[5], 3, 0, 0, placed[4], len(shstrtab), 0, 0, 1, 0),
    ]
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\0" * 8
    header = ident + struct.pack("<HHIQQQIHHHHHH", 3, 183, 1, 0, 0, shoff, 0,
                                 64, 56, 0, 64, len(shdrs), 5)
    return header + body + b"".join(shdrs)


@pytest.fixture
def elf_file(tmp_path):
    def make(name, **kw):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_elf(**kw))
        return path
    return make
