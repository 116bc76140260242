"""
AndroidManifest.xml edits.

Plain-text substitutions, like the smali helpers, so attribute order and
formatting of everything else survive untouched.
"""

import re
from pathlib import Path
from typing import Iterable

from .log import ok, warn

CRASH_PRONE_PROVIDERS = (
    "androidx.startup.InitializationProvider",
    "com.google.firebase.provider.FirebaseInitProvider",
    "com.google.android.gms.ads.MobileAdsInitProvider",
    "com.pairip.licensecheck.LicenseContentProvider",
)


def disable_components(manifest: Path, names: Iterable[str] = CRASH_PRONE_PROVIDERS) -> int:
    """Add android:enabled="false" after each named component, once."""
    manifest = Path(manifest)
    text = manifest.read_text(encoding="utf-8")
    total = 0
    for name in names:
        attr = f'android:name="{name}"'
        pat = re.compile(re.escape(attr) + r'(?!\s+android:enabled="false")')
        text, n = pat.subn(attr + ' android:enabled="false"', text)
        total += n
    if total:
        manifest.write_text(text, encoding="utf-8")
    (ok if total else warn)(f"  disable_components: {total}")
    return total


def drop_split_requirements(manifest: Path) -> int:
    """Allow installing as a single APK with bundled native libs."""
    manifest = Path(manifest)
    text = manifest.read_text(encoding="utf-8")
    total = 0
    for find, repl in (
        (r'\s+android:requiredSplitTypes="[^"]*"', ''),
        (r'\s+android:splitTypes="[^"]*"', ''),
        (r'(android:name="com\.android\.vending\.splits\.required"\s+android:value=)"true"',
         r'\1"false"'),
        (r'(android:extractNativeLibs=)"false"', r'\1"true"'),
    ):
        text, n = re.subn(find, repl, text)
        total += n
    if total:
        manifest.write_text(text, encoding="utf-8")
    (ok if total else warn)(f"  drop_split_requirements: {total}")
    return total
