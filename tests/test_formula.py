"""
Tests for the Homebrew-style formula parser.
"""

import textwrap
from pathlib import Path

import pytest

from keg.core.config.formula import class_to_name, parse_formula
from keg.core.config.loader import load_manifest
from keg.core.errors import ParseError
from keg.core.models.manifest import DestinationCategory

HURL_RB = textwrap.dedent("""\
    class Hurl < Formula
      desc "Modern HTTP CLI"
      homepage "https://github.com/hurl/hurl"
      url "https://github.com/hurl/hurl/releases/download/v0.1.0/hurl-0.1.0-x86_64-apple-darwin.tar.gz"
      sha256 "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
      license "MIT", "Apache-2.0"

      depends_on "rust" => :build

      def install
        bin.install "hurl"
        bash_completion.install "completions/hurl.bash" => "hurl"
        zsh_completion.install "completions/_hurl"
        fish_completion.install "completions/hurl.fish"
        man1.install "man/hurl.1"
      end

      test do
        system "#{bin}/hurl", "--version"
      end
    end
""")


class TestHurlFormula:
    def test_fields(self):
        m = parse_formula(HURL_RB)
        assert m.name == "hurl"
        assert m.desc == "Modern HTTP CLI"
        assert m.homepage == "https://github.com/hurl/hurl"
        assert m.version == "0.1.0"
        assert m.digest.algorithm == "sha256"
        assert m.license == frozenset({"MIT", "Apache-2.0"})
        assert m.build_dependencies == ["rust"]
        assert m.run_dependencies == []

    def test_install_steps_in_order(self):
        m = parse_formula(HURL_RB)
        assert [(s.category, s.source, s.destination_name) for s in m.install] == [
            (DestinationCategory.BIN, "hurl", "hurl"),
            (DestinationCategory.BASH_COMPLETION, "completions/hurl.bash", "hurl"),
            (DestinationCategory.ZSH_COMPLETION, "completions/_hurl", "_hurl"),
            (DestinationCategory.FISH_COMPLETION, "completions/hurl.fish", "hurl.fish"),
            (DestinationCategory.MAN1, "man/hurl.1", "hurl.1"),
        ]

    def test_smoke_test(self):
        m = parse_formula(HURL_RB)
        assert m.smoke_binary() == "hurl"
        assert m.test.args == ("--version",)

    def test_load_from_rb_file(self, tmp_path: Path):
        path = tmp_path / "hurl.rb"
        path.write_text(HURL_RB)
        assert load_manifest(path).name == "hurl"


class TestFormulaSyntax:
    def _formula(self, install: str, extra: str = "", test: str = "") -> str:
        return (
            "class FooBar < Formula\n"
            '  url "https://example.com/foo-bar-1.0.tar.gz"\n'
            '  sha256 "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"\n'
            f"{extra}"
            "  def install\n"
            f"{install}"
            "  end\n"
            f"{test}"
            "end\n"
        )

    def test_class_name_to_package_name(self):
        assert class_to_name("FooBar") == "foo-bar"
        assert class_to_name("Hurl") == "hurl"
        assert parse_formula(self._formula('    bin.install "foo"\n')).name == "foo-bar"

    def test_several_sources_in_one_call(self):
        m = parse_formula(self._formula('    bin.install "foo", "foo-helper"\n'))
        assert [s.source for s in m.install] == ["foo", "foo-helper"]

    def test_list_of_sources(self):
        m = parse_formula(self._formula('    man1.install ["a.1", "b.1"]\n'))
        assert [s.destination_name for s in m.install] == ["a.1", "b.1"]

    def test_unknown_blocks_are_skipped(self):
        extra = (
            "  livecheck do\n"
            '    url :stable\n'
            "  end\n"
            "  bottle do\n"
            '    sha256 cellar: :any, arm64_sonoma: "abc"\n'
            "  end\n"
        )
        m = parse_formula(self._formula('    bin.install "foo"\n', extra=extra))
        assert len(m.install) == 1

    def test_comments_ignored(self):
        m = parse_formula(self._formula('    # the binary\n    bin.install "foo" # main\n'))
        assert m.install[0].source == "foo"

    def test_depends_on_run_by_default(self):
        m = parse_formula(self._formula('    bin.install "foo"\n', extra='  depends_on "curl"\n'))
        assert m.run_dependencies == ["curl"]

    def test_bin_path_test_syntax(self):
        m = parse_formula(self._formula(
            '    bin.install "foo"\n',
            test='  test do\n    system bin/"foo", "--help"\n  end\n',
        ))
        assert m.test.binary == "foo"
        assert m.test.args == ("--help",)


class TestFormulaErrors:
    def test_missing_class_header(self):
        with pytest.raises(ParseError, match="class <Name> < Formula"):
            parse_formula('url "https://example.com/x.tar.gz"\n')

    def test_unsupported_install_statement_has_line(self):
        text = HURL_RB.replace('    man1.install "man/hurl.1"\n', '    system "make", "install"\n')
        with pytest.raises(ParseError) as exc_info:
            parse_formula(text)
        err = exc_info.value
        assert err.line == 15
        assert err.manifest_name == "hurl"
        assert str(err).startswith("hurl: line 15: Unsupported statement")

    def test_unsupported_install_destination(self):
        text = HURL_RB.replace("man1.install", "lib.install")
        with pytest.raises(ParseError, match="Unsupported install destination 'lib'"):
            parse_formula(text)

    def test_interpolation_rejected(self):
        text = HURL_RB.replace('bin.install "hurl"', 'bin.install "hurl-#{version}"')
        with pytest.raises(ParseError, match="interpolation"):
            parse_formula(text)

    def test_missing_sha256(self):
        text = "\n".join(line for line in HURL_RB.splitlines() if "sha256" not in line)
        with pytest.raises(ParseError, match="sha256"):
            parse_formula(text)

    def test_unterminated_install_block(self):
        text = 'class X < Formula\n  url "https://e.com/x.tgz"\n  def install\n    bin.install "x"\n'
        with pytest.raises(ParseError, match="missing 'end'"):
            parse_formula(text)

    def test_no_install_block(self):
        text = (
            "class X < Formula\n"
            '  url "https://example.com/x.tgz"\n'
            '  sha256 "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"\n'
            "end\n"
        )
        with pytest.raises(ParseError, match="no 'def install' steps"):
            parse_formula(text)

    def test_unbalanced_shell_output_quotes(self):
        text = HURL_RB.replace(
            'system "#{bin}/hurl", "--version"',
            "assert_match \"0.1\", shell_output(\"#{bin}/hurl 'x\")",
        )
        with pytest.raises(ParseError) as exc_info:
            parse_formula(text)
        assert exc_info.value.line == 19
        assert "shell_output" in str(exc_info.value)
