"""
Best-effort npm dependency scan over generated files.
Regex-based, so false negatives are possible; the install stage just won't
know about those packages.
"""

import re

from sitegen.models import GeneratedFile

# import x from 'pkg' / import {a, b} from "pkg" / import * as x from 'pkg'
_IMPORT_FROM_RE = re.compile(r"""\bimport\s+(?:type\s+)?[\w*{}\s,$]+?\s+from\s+['"]([^'"]+)['"]""")
# import 'pkg/styles.css'
_SIDE_EFFECT_IMPORT_RE = re.compile(r"""\bimport\s+['"]([^'"]+)['"]""")
# require('pkg') / import('pkg')
_CALL_IMPORT_RE = re.compile(r"""\b(?:require|import)\s*\(\s*['"]([^'"]+)['"]\s*\)""")

_PACKAGE_TAG_RE = re.compile(r"<package>(.*?)</package>", re.DOTALL)
_PACKAGES_TAG_RE = re.compile(r"<packages>(.*?)</packages>", re.DOTALL)

# Provided by the runtime or the base template
IGNORED_PACKAGES = {"react", "react-dom"}

NODE_BUILTINS = {
    "assert", "buffer", "child_process", "crypto", "events", "fs", "http",
    "https", "net", "os", "path", "process", "querystring", "stream",
    "string_decoder", "timers", "tty", "url", "util", "zlib",
}

_VALID_NAME_RE = re.compile(r"^(?:@[a-z0-9][\w.-]*/)?[a-z0-9][\w.-]*$", re.IGNORECASE)


def package_name(import_path: str) -> str | None:
    """
    Map an import specifier to its npm package name, or None when it does
    not refer to a package ("./x", "/x", "@/x", "node:fs", "react").
    """
    spec = import_path.strip()
    if not spec or spec.startswith((".", "/", "@/", "~/", "node:", "http:", "https:")):
        return None
    parts = spec.split("/")
    if spec.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            return None
        name = "/".join(parts[:2])
    else:
        name = parts[0]
    if name in IGNORED_PACKAGES or name in NODE_BUILTINS:
        return None
    if not _VALID_NAME_RE.match(name):
        return None
    return name


def packages_from_code(content: str) -> list[str]:
    """Packages imported by one source file, in order of first appearance."""
    found: list[tuple[int, str]] = []
    for regex in (_IMPORT_FROM_RE, _SIDE_EFFECT_IMPORT_RE, _CALL_IMPORT_RE):
        for m in regex.finditer(content):
            found.append((m.start(), m.group(1)))
    found.sort()

    packages = []
    for _, spec in found:
        name = package_name(spec)
        if name and name not in packages:
            packages.append(name)
    return packages


def packages_from_tags(text: str) -> list[str]:
    """Packages declared with <package>x</package> or <packages>a, b</packages>."""
    packages = []
    for m in _PACKAGE_TAG_RE.finditer(text):
        name = m.group(1).strip()
        if name and name not in packages:
            packages.append(name)
    for m in _PACKAGES_TAG_RE.finditer(text):
        for name in re.split(r"[\s,]+", m.group(1)):
            name = name.strip()
            if name and name not in packages:
                packages.append(name)
    return packages


def detect_packages(files: list[GeneratedFile], raw_text: str = "") -> list[str]:
    """All packages referenced by `files` (JS sources only) plus tag declarations."""
    packages: list[str] = []
    for f in files:
        if f.type != "javascript":
            continue
        for name in packages_from_code(f.content):
            if name not in packages:
                packages.append(name)
    for name in packages_from_tags(raw_text):
        if name not in packages:
            packages.append(name)
    return packages
