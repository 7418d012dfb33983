"""
Manifest loader — reads package manifests into ``Manifest`` models.

Two input formats are accepted:

- YAML or JSON mappings (``.yml``, ``.yaml``, ``.json``), parsed by
  :func:`parse_manifest`.
- Homebrew-style formulas (``.rb``), parsed by
  :func:`keg.core.config.formula.parse_formula`.

Both produce the same validated, immutable model. Any problem with the
input surfaces as ``ParseError``; nothing here touches the network or
the destination filesystem.

Mapping format::

    name: hurl
    desc: Modern HTTP CLI
    homepage: https://github.com/hurl/hurl
    url: https://github.com/hurl/hurl/releases/download/v0.1.0/hurl-0.1.0.tar.gz
    sha256: e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855
    license: [MIT, Apache-2.0]
    depends_on:
      rust: build
    install:
      - bin: hurl
      - bash_completion: completions/hurl.bash
        as: hurl
      - man1: man/hurl.1
    test:
      args: ["--version"]
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from keg.core.errors import ParseError
from keg.core.models.manifest import (
    DependencyKind,
    DestinationCategory,
    Digest,
    Manifest,
    infer_version,
)

logger = logging.getLogger(__name__)

MAPPING_SUFFIXES = (".yml", ".yaml", ".json")
FORMULA_SUFFIXES = (".rb",)

_CATEGORIES = {c.value for c in DestinationCategory}
_STEP_NAME_KEYS = ("as", "name")


def load_manifest(path: Path) -> Manifest:
    """Read and parse a manifest file, dispatching on its suffix.

    Raises:
        ParseError: If the file is unreadable, of an unknown type,
            or does not describe a valid manifest.
    """
    suffix = path.suffix.lower()
    if suffix not in MAPPING_SUFFIXES + FORMULA_SUFFIXES:
        raise ParseError(
            f"Unsupported manifest type '{suffix or path.name}' "
            f"(expected one of: {', '.join(MAPPING_SUFFIXES + FORMULA_SUFFIXES)})"
        )

    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ParseError(f"Cannot read manifest {path}: {e}") from e

    logger.debug("Loading manifest from %s", path)

    if suffix in FORMULA_SUFFIXES:
        from keg.core.config.formula import parse_formula

        manifest = parse_formula(raw)
    else:
        manifest = parse_manifest(raw)

    logger.info(
        "Loaded manifest '%s' %s with %d install steps",
        manifest.name, manifest.version or "(unversioned)", len(manifest.install),
    )
    return manifest


def parse_manifest(raw: Mapping[str, Any] | str | bytes) -> Manifest:
    """Parse a manifest mapping, or YAML/JSON text holding one.

    Raises:
        ParseError: If ``name``, ``url`` or the digest is missing or
            malformed, or any other field fails validation.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as e:
            raise ParseError(f"Invalid YAML/JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise ParseError(f"Expected a mapping, got {type(data).__name__}")

    name = _require_str(data, "name")
    fields: dict[str, Any] = {
        "name": name,
        "url": _require_str(data, "url", manifest_name=name),
        "digest": _parse_digest(data, manifest_name=name),
        "desc": _optional_str(data, "desc", manifest_name=name),
        "homepage": _optional_str(data, "homepage", manifest_name=name),
        "license": _parse_license(data.get("license"), manifest_name=name),
        "dependencies": _parse_depends_on(data.get("depends_on"), manifest_name=name),
        "install": _parse_install(data.get("install"), manifest_name=name),
    }
    version = data.get("version")
    fields["version"] = str(version).strip() if version is not None else infer_version(fields["url"])

    if data.get("test") is not None:
        fields["test"] = _parse_test(data["test"], manifest_name=name)

    return build_manifest(fields)


def build_manifest(fields: dict[str, Any]) -> Manifest:
    """Validate collected fields into a ``Manifest``, mapping errors to ParseError."""
    try:
        return Manifest.model_validate(fields)
    except ValidationError as e:
        raise ParseError(
            f"Invalid manifest: {format_validation_error(e)}",
            manifest_name=fields.get("name") or None,
        ) from e


def format_validation_error(e: ValidationError) -> str:
    """One-line summary of a pydantic validation error."""
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


# ── Field helpers ───────────────────────────────────────────────


def _require_str(data: Mapping[str, Any], key: str, *, manifest_name: str | None = None) -> str:
    value = data.get(key)
    if value is None:
        raise ParseError(f"Missing required field '{key}'", manifest_name=manifest_name)
    if not isinstance(value, str) or not value.strip():
        raise ParseError(
            f"Field '{key}' must be a non-empty string", manifest_name=manifest_name,
        )
    return value.strip()


def _optional_str(data: Mapping[str, Any], key: str, *, manifest_name: str | None = None) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"Field '{key}' must be a string", manifest_name=manifest_name)
    return value.strip()


def _parse_digest(data: Mapping[str, Any], *, manifest_name: str | None = None) -> Digest:
    sha256 = data.get("sha256")
    checksum = data.get("checksum")
    if sha256 is None and checksum is None:
        raise ParseError("Missing required field 'sha256'", manifest_name=manifest_name)
    if sha256 is not None and checksum is not None:
        raise ParseError(
            "Declare either 'sha256' or 'checksum', not both", manifest_name=manifest_name,
        )

    text = sha256 if sha256 is not None else checksum
    if not isinstance(text, str):
        raise ParseError("Digest must be a string", manifest_name=manifest_name)
    try:
        if sha256 is not None:
            return Digest(algorithm="sha256", value=text)
        return Digest.parse(text)
    except ValidationError as e:
        raise ParseError(
            f"Malformed digest: {format_validation_error(e)}", manifest_name=manifest_name,
        ) from e


def _parse_license(value: Any, *, manifest_name: str | None = None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ParseError(
        "Field 'license' must be a string or a list of strings", manifest_name=manifest_name,
    )


def _parse_depends_on(value: Any, *, manifest_name: str | None = None) -> list[dict[str, str]]:
    """``{name: build|run}``, a list of names, or one name (run deps)."""
    if value is None:
        return []
    if isinstance(value, str):
        return [{"name": value, "kind": DependencyKind.RUN.value}]
    if isinstance(value, list):
        if not all(isinstance(v, str) for v in value):
            raise ParseError(
                "Field 'depends_on' list must hold names", manifest_name=manifest_name,
            )
        return [{"name": v, "kind": DependencyKind.RUN.value} for v in value]
    if isinstance(value, Mapping):
        deps = []
        for dep_name, kind in value.items():
            kind_text = str(kind or DependencyKind.RUN.value).lstrip(":").strip().lower()
            if kind_text not in {k.value for k in DependencyKind}:
                raise ParseError(
                    f"Dependency '{dep_name}' has unknown kind '{kind}' (expected build or run)",
                    manifest_name=manifest_name,
                )
            deps.append({"name": str(dep_name), "kind": kind_text})
        return deps
    raise ParseError(
        "Field 'depends_on' must be a mapping, a list or a name", manifest_name=manifest_name,
    )


def _parse_install(value: Any, *, manifest_name: str | None = None) -> list[dict[str, Any]]:
    if value is None:
        raise ParseError("Missing required field 'install'", manifest_name=manifest_name)
    if not isinstance(value, list):
        raise ParseError("Field 'install' must be a list of steps", manifest_name=manifest_name)

    steps: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        steps.extend(_parse_step(item, index, manifest_name=manifest_name))
    return steps


def _parse_step(item: Any, index: int, *, manifest_name: str | None = None) -> list[dict[str, Any]]:
    """One entry of ``install``; a list of sources expands to several steps."""
    if not isinstance(item, Mapping):
        raise ParseError(
            f"install[{index}] must be a mapping", manifest_name=manifest_name,
        )

    # Explicit form: {source, category, name}
    if "source" in item or "category" in item:
        unknown = set(item) - {"source", "category", "name"}
        if unknown:
            raise ParseError(
                f"install[{index}] has unknown keys: {', '.join(sorted(map(str, unknown)))}",
                manifest_name=manifest_name,
            )
        category = item.get("category")
        if category not in _CATEGORIES:
            raise ParseError(
                f"install[{index}] has unknown category '{category}'",
                manifest_name=manifest_name,
            )
        return [{"source": item.get("source"), "category": category, "name": item.get("name")}]

    # Short form: {<category>: <source or sources>, as: <name>}
    categories = [k for k in item if k in _CATEGORIES]
    unknown = [k for k in item if k not in _CATEGORIES and k not in _STEP_NAME_KEYS]
    if unknown:
        raise ParseError(
            f"install[{index}] has unknown category '{unknown[0]}' "
            f"(expected one of: {', '.join(sorted(_CATEGORIES))})",
            manifest_name=manifest_name,
        )
    if len(categories) != 1:
        raise ParseError(
            f"install[{index}] must name exactly one category", manifest_name=manifest_name,
        )

    category = categories[0]
    sources = item[category]
    rename = item.get("as", item.get("name"))

    if isinstance(sources, str):
        return [{"source": sources, "category": category, "name": rename}]
    if isinstance(sources, list) and sources and all(isinstance(s, str) for s in sources):
        if rename is not None:
            raise ParseError(
                f"install[{index}] cannot rename several sources", manifest_name=manifest_name,
            )
        return [{"source": s, "category": category, "name": None} for s in sources]
    raise ParseError(
        f"install[{index}] source must be a path or a list of paths",
        manifest_name=manifest_name,
    )


def _parse_test(value: Any, *, manifest_name: str | None = None) -> dict[str, Any]:
    """``{binary, args}``, a list of args, or a shell-style string of args."""
    if isinstance(value, str):
        return {"args": _split_args(value, "test", manifest_name=manifest_name)}
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return {"args": value}
    if isinstance(value, Mapping):
        spec: dict[str, Any] = {}
        if value.get("binary") is not None:
            spec["binary"] = str(value["binary"])
        args = value.get("args")
        if args is not None:
            if isinstance(args, str):
                args = _split_args(args, "test.args", manifest_name=manifest_name)
            if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
                raise ParseError(
                    "Field 'test.args' must be a list of strings", manifest_name=manifest_name,
                )
            spec["args"] = args
        return spec
    raise ParseError(
        "Field 'test' must be a mapping, a list or a string", manifest_name=manifest_name,
    )


def _split_args(value: str, field: str, *, manifest_name: str | None = None) -> list[str]:
    try:
        return shlex.split(value)
    except ValueError as e:
        raise ParseError(
            f"Field '{field}' is not a valid argument string: {e}", manifest_name=manifest_name,
        ) from e
