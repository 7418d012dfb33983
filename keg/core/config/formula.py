"""
Formula parser — reads the Homebrew formula subset used for pre-built
binary releases.

Only declarative statements are understood; nothing is evaluated::

    class Hurl < Formula
      desc "Modern HTTP CLI"
      homepage "https://github.com/hurl/hurl"
      url "https://.../hurl-0.1.0-x86_64-apple-darwin.tar.gz"
      sha256 "e3b0c442..."
      license "MIT", "Apache-2.0"

      depends_on "rust" => :build

      def install
        bin.install "hurl"
        bash_completion.install "completions/hurl.bash" => "hurl"
        man1.install "man/hurl.1"
      end

      test do
        system "#{bin}/hurl", "--version"
      end
    end

Top-level statements keg does not model (``livecheck``, ``bottle``,
``revision``...) are skipped. The ``install`` block is strict: anything
other than ``<category>.install`` is a ParseError, since silently
dropping a step would install a different package than the one
described.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass
from typing import Any

from keg.core.config.loader import build_manifest
from keg.core.errors import ParseError
from keg.core.models.manifest import (
    DependencyKind,
    DestinationCategory,
    Manifest,
    infer_version,
)

logger = logging.getLogger(__name__)

_CLASS_RE = re.compile(r"^class\s+([A-Z]\w*)\s*<\s*Formula\s*$")
_INSTALL_CALL_RE = re.compile(r"^([a-z_]\w*)\.install\b\s*(.*)$")
_HEREDOC_RE = re.compile(r"<<[~-]?([A-Z_][A-Z0-9_]*)")
_BLOCK_OPENER_RE = re.compile(
    r"^(?:def|if|unless|case|begin|while|until|module|class)\b"
    r"|\bdo(?:\s*\|[^|]*\|)?\s*$"
)
_SHELL_OUTPUT_RE = re.compile(r"""shell_output\(\s*"#\{bin\}/([^"]+)"\s*(?:,\s*\d+\s*)?\)""")
_BIN_PATH_RE = re.compile(r'\bbin\s*/\s*"([^"#]+)"')

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
       |(?P<arrow>=>)
       |(?P<symbol>:[A-Za-z_]\w*[?!]?)
       |(?P<label>[A-Za-z_]\w*:)(?!:)
       |(?P<ident>[A-Za-z_][\w.]*[?!]?)
       |(?P<number>\d[\w.]*)
       |(?P<punct>[,()\[\]{}])
       |(?P<comment>\#.*)
    )""",
    re.VERBOSE,
)

_DQ_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\", "#": "#"}


@dataclass
class _Token:
    kind: str
    value: str


@dataclass
class _Line:
    number: int
    text: str


def parse_formula(text: str) -> Manifest:
    """Parse formula source into a ``Manifest``.

    Raises:
        ParseError: On a missing ``class ... < Formula`` header, an
            unterminated block, or an unsupported install statement.
    """
    return _FormulaParser(text).parse()


def class_to_name(class_name: str) -> str:
    """``FooBar`` → ``foo-bar``; ``Hurl`` → ``hurl``."""
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "-", class_name).lower()


# ── Tokenizer ───────────────────────────────────────────────────


def _tokenize(text: str, line: int) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ParseError(f"Cannot parse near: {text[pos:].strip()[:30]!r}", line=line)
        pos = m.end()
        kind = m.lastgroup or ""
        if kind == "comment":
            break
        raw = m.group(kind)
        if kind == "string":
            tokens.append(_Token("string", _unquote(raw)))
        elif kind == "symbol":
            tokens.append(_Token("symbol", raw[1:]))
        elif kind == "label":
            tokens.append(_Token("label", raw[:-1]))
        else:
            tokens.append(_Token(kind, raw))
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    if raw[0] == "'":
        return body.replace("\\'", "'").replace("\\\\", "\\")
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            out.append(_DQ_ESCAPES.get(body[i + 1], body[i + 1]))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _strip_strings(text: str) -> str:
    """Blank out string literals and comments so keyword scans ignore them."""
    text = re.sub(r'"(?:[^"\\]|\\.)*"', '""', text)
    text = re.sub(r"'(?:[^'\\]|\\.)*'", "''", text)
    return text.split("#", 1)[0].strip()


def _split_args(tokens: list[_Token]) -> list[list[_Token]]:
    """Split call arguments on top-level commas, dropping wrapping parens."""
    if tokens and tokens[0].value == "(" and tokens[-1].value == ")":
        tokens = tokens[1:-1]
    groups: list[list[_Token]] = [[]]
    depth = 0
    for tok in tokens:
        if tok.kind == "punct" and tok.value in "([{":
            depth += 1
        elif tok.kind == "punct" and tok.value in ")]}":
            depth -= 1
        if tok.kind == "punct" and tok.value == "," and depth == 0:
            groups.append([])
            continue
        groups[-1].append(tok)
    return [g for g in groups if g]


def _has_interpolation(value: str) -> bool:
    return "#{" in value


# ── Parser ──────────────────────────────────────────────────────


class _FormulaParser:
    def __init__(self, text: str):
        self._lines = self._logical_lines(text)
        self._pos = 0
        self._fields: dict[str, Any] = {
            "license": [],
            "dependencies": [],
            "install": [],
        }
        self._handlers = {
            "desc": self._stmt_single("desc"),
            "homepage": self._stmt_single("homepage"),
            "url": self._stmt_single("url"),
            "version": self._stmt_single("version"),
            "sha256": self._stmt_sha256,
            "license": self._stmt_license,
            "depends_on": self._stmt_depends_on,
        }

    @staticmethod
    def _logical_lines(text: str) -> list[_Line]:
        """Non-blank lines, with heredoc bodies removed."""
        lines: list[_Line] = []
        raw_lines = text.splitlines()
        i = 0
        while i < len(raw_lines):
            stripped = raw_lines[i].strip()
            number = i + 1
            i += 1
            if not stripped or stripped.startswith("#"):
                continue
            lines.append(_Line(number, stripped))
            heredoc = _HEREDOC_RE.search(_strip_strings(stripped))
            if heredoc:
                marker = heredoc.group(1)
                while i < len(raw_lines) and raw_lines[i].strip() != marker:
                    i += 1
                if i >= len(raw_lines):
                    raise ParseError(f"Unterminated heredoc '{marker}'", line=number)
                i += 1
        return lines

    def _next(self) -> _Line | None:
        if self._pos >= len(self._lines):
            return None
        line = self._lines[self._pos]
        self._pos += 1
        return line

    # ── Entry ──

    def parse(self) -> Manifest:
        header = self._next()
        if header is None:
            raise ParseError("Empty formula")
        m = _CLASS_RE.match(_strip_strings(header.text))
        if not m:
            raise ParseError("Expected 'class <Name> < Formula'", line=header.number)
        name = class_to_name(m.group(1))
        self._fields["name"] = name

        try:
            self._parse_body()
        except ParseError as e:
            e.with_context(manifest_name=name)
            raise

        for required in ("url", "digest"):
            if required not in self._fields:
                key = "sha256" if required == "digest" else required
                raise ParseError(f"Missing required field '{key}'", manifest_name=name)
        if not self._fields["install"]:
            raise ParseError("Formula has no 'def install' steps", manifest_name=name)

        self._fields.setdefault("version", infer_version(self._fields["url"]))
        return build_manifest(self._fields)

    def _parse_body(self) -> None:
        while True:
            line = self._next()
            if line is None:
                raise ParseError("Unterminated formula class (missing 'end')")
            code = _strip_strings(line.text)
            keyword = code.split(None, 1)[0] if code else ""

            if code == "end":
                return
            if code == "def install":
                self._parse_install_block(line)
            elif re.match(r"^test\s+do$", code):
                self._parse_test_block(line)
            elif _BLOCK_OPENER_RE.search(code):
                logger.debug("Skipping formula block at line %d: %s", line.number, code)
                self._skip_block(line)
            elif keyword in self._handlers:
                tokens = _tokenize(line.text, line.number)
                self._handlers[keyword](tokens[1:], line)
            else:
                logger.debug("Ignoring formula statement at line %d: %s", line.number, line.text)

    def _skip_block(self, opener: _Line) -> list[_Line]:
        """Consume lines up to the ``end`` matching ``opener``; return them."""
        depth = 1
        body: list[_Line] = []
        while depth:
            line = self._next()
            if line is None:
                raise ParseError("Unterminated block (missing 'end')", line=opener.number)
            code = _strip_strings(line.text)
            if code == "end" or code.startswith("end "):
                depth -= 1
                if depth == 0:
                    break
            elif _BLOCK_OPENER_RE.search(code):
                depth += 1
            body.append(line)
        return body

    # ── Top-level statements ──

    def _stmt_single(self, field: str):
        def handler(args: list[_Token], line: _Line) -> None:
            if not args or args[0].kind != "string":
                raise ParseError(f"'{field}' expects a string", line=line.number)
            if field in self._fields:
                raise ParseError(f"'{field}' declared twice", line=line.number)
            self._fields[field] = args[0].value

        return handler

    def _stmt_sha256(self, args: list[_Token], line: _Line) -> None:
        if not args or args[0].kind != "string":
            raise ParseError("'sha256' expects a string", line=line.number)
        if "digest" in self._fields:
            raise ParseError("'sha256' declared twice", line=line.number)
        self._fields["digest"] = {"algorithm": "sha256", "value": args[0].value}

    def _stmt_license(self, args: list[_Token], line: _Line) -> None:
        # license "MIT", "Apache-2.0"  |  license any_of: ["MIT", "Apache-2.0"]
        names = [t.value for t in args if t.kind == "string"]
        if not names:
            raise ParseError("'license' expects one or more strings", line=line.number)
        self._fields["license"].extend(names)

    def _stmt_depends_on(self, args: list[_Token], line: _Line) -> None:
        # depends_on "rust" => :build  |  depends_on "openssl@3"
        if not args or args[0].kind != "string":
            raise ParseError("'depends_on' expects a string", line=line.number)
        kind = DependencyKind.RUN.value
        if len(args) >= 3 and args[1].kind == "arrow":
            if args[2].kind == "symbol":
                kind = args[2].value
            elif args[2].kind == "punct" and args[2].value == "[":
                symbols = [t.value for t in args[3:] if t.kind == "symbol"]
                kind = DependencyKind.BUILD.value if symbols == ["build"] else DependencyKind.RUN.value
        if kind not in {k.value for k in DependencyKind}:
            # :test, :optional and friends don't matter for a binary install
            logger.debug("Dependency '%s' kind :%s treated as run", args[0].value, kind)
            kind = DependencyKind.RUN.value
        self._fields["dependencies"].append({"name": args[0].value, "kind": kind})

    # ── def install ──

    def _parse_install_block(self, opener: _Line) -> None:
        while True:
            line = self._next()
            if line is None:
                raise ParseError("Unterminated 'def install' (missing 'end')", line=opener.number)
            code = _strip_strings(line.text)
            if code == "end":
                return
            m = _INSTALL_CALL_RE.match(line.text)
            if not m:
                raise ParseError(
                    f"Unsupported statement in install block: {line.text}", line=line.number,
                )
            category = m.group(1)
            if category not in {c.value for c in DestinationCategory}:
                raise ParseError(
                    f"Unsupported install destination '{category}'", line=line.number,
                )
            tokens = _tokenize(m.group(2), line.number)
            self._fields["install"].extend(self._install_args(category, tokens, line))

    def _install_args(self, category: str, tokens: list[_Token], line: _Line) -> list[dict]:
        groups = _split_args(tokens)
        if not groups:
            raise ParseError(f"'{category}.install' needs at least one path", line=line.number)

        steps = []
        for group in groups:
            kinds = [t.kind for t in group]
            if kinds == ["string"]:
                source, name = group[0].value, None
            elif kinds == ["string", "arrow", "string"]:
                source, name = group[0].value, group[2].value
            elif group[0].kind == "punct" and group[0].value == "[" and group[-1].value == "]":
                inner = group[1:-1]
                sources = [t.value for t in inner if t.kind == "string"]
                if len(sources) != len([t for t in inner if t.kind != "punct"]):
                    raise ParseError("Install list must hold only strings", line=line.number)
                for source in sources:
                    steps.append(self._step(category, source, None, line))
                continue
            else:
                raise ParseError(
                    f"Unsupported '{category}.install' arguments", line=line.number,
                )
            steps.append(self._step(category, source, name, line))
        return steps

    @staticmethod
    def _step(category: str, source: str, name: str | None, line: _Line) -> dict:
        if _has_interpolation(source) or (name and _has_interpolation(name)):
            raise ParseError("String interpolation is not supported in install paths", line=line.number)
        return {"source": source, "category": category, "name": name}

    # ── test do ──

    def _parse_test_block(self, opener: _Line) -> None:
        body = self._skip_block(opener)
        for line in body:
            code = _strip_strings(line.text)
            if code.startswith("system"):
                spec = self._system_test(line)
                if spec is not None:
                    self._fields["test"] = spec
                    return
            m = _SHELL_OUTPUT_RE.search(line.text)
            if m:
                try:
                    parts = shlex.split(m.group(1))
                except ValueError as e:
                    raise ParseError(f"Invalid shell_output command: {e}", line=line.number) from e
                if not parts:
                    raise ParseError("shell_output names no binary", line=line.number)
                self._fields["test"] = {"binary": parts[0], "args": parts[1:]}
                return
        logger.debug("No usable smoke test in formula test block (line %d)", opener.number)

    @staticmethod
    def _system_test(line: _Line) -> dict | None:
        # system "#{bin}/hurl", "--version"  |  system bin/"hurl", "--version"
        text = _BIN_PATH_RE.sub(lambda m: f'"#{{bin}}/{m.group(1)}"', line.text)
        try:
            tokens = _tokenize(text, line.number)[1:]
        except ParseError:
            logger.debug("Formula test at line %d is not a plain system call", line.number)
            return None
        strings = [t.value for g in _split_args(tokens) for t in g if t.kind == "string"]
        if not strings or not strings[0].startswith("#{bin}/"):
            return None
        binary = strings[0][len("#{bin}/"):]
        args = strings[1:]
        if _has_interpolation(binary) or any(_has_interpolation(a) for a in args):
            logger.debug("Formula test at line %d uses interpolation; skipped", line.number)
            return None
        return {"binary": binary, "args": args}
