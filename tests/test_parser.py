"""Tests for import/export extraction."""

import pytest

from topology_cli.parser import (
    GrammarLoader,
    ParseError,
    ast_python_exports,
    ast_python_imports,
    content_hash,
    extract_python_exports,
    extract_python_imports,
    extract_ts_exports,
    extract_ts_imports,
    is_relative_source,
    signature_hash,
    ts_grammar_for,
)


class TestHashing:
    """Tests for content and signature hashes."""

    def test_content_hash_is_sha256_hex(self):
        digest = content_hash("export const a = 1;")
        assert len(digest) == 64
        assert digest == content_hash("export const a = 1;")
        assert digest != content_hash("export const a = 2;")

    def test_signature_hash_ignores_order_and_duplicates(self):
        assert signature_hash(["b", "a"]) == signature_hash(["a", "b", "a"])
        assert len(signature_hash(["a"])) == 16

    def test_signature_hash_changes_with_names(self):
        assert signature_hash(["foo"]) != signature_hash(["bar"])

    def test_relative_sources(self):
        assert is_relative_source("./b")
        assert is_relative_source("../utils/c")
        assert is_relative_source(".helpers")
        assert not is_relative_source("react")

    def test_grammar_for_path(self):
        assert ts_grammar_for("src/Button.tsx") == "tsx"
        assert ts_grammar_for("src/app.jsx") == "tsx"
        assert ts_grammar_for("src/a.ts") == "typescript"
        assert ts_grammar_for("lib/index.js") == "typescript"


class TestGrammarLoader:
    """Tests for lazy grammar loading."""

    def test_unknown_grammar_raises_parse_error(self):
        loader = GrammarLoader()
        assert loader.get("cobol") is None
        with pytest.raises(ParseError):
            loader.parse("cobol", "IDENTIFICATION DIVISION.")

    def test_parser_is_cached(self):
        pytest.importorskip("tree_sitter_python")
        loader = GrammarLoader()
        assert loader.get("python") is loader.get("python")


class TestTypeScriptExtraction:
    """Tests for the TypeScript import/export extractors."""

    @pytest.fixture
    def parse(self):
        pytest.importorskip("tree_sitter_typescript")
        loader = GrammarLoader()
        return lambda src, grammar="typescript": loader.parse(grammar, src)

    def test_import_forms(self, parse):
        root = parse(
            "import React from 'react';\n"
            "import { a, b as c } from './b';\n"
            "import * as utils from '../utils';\n"
            "import './side-effect';\n"
        )
        imports = extract_ts_imports(root)

        assert [i.source for i in imports] == ["react", "./b", "../utils", "./side-effect"]
        assert imports[0].default_import == "React"
        assert not imports[0].is_relative
        assert imports[1].named_imports == ("a", "b")
        assert imports[1].is_relative
        assert imports[2].default_import == "* as utils"

    def test_reexport_counts_as_import(self, parse):
        root = parse("export { foo } from './foo';\nexport * from './bar';\n")
        imports = extract_ts_imports(root)
        assert [i.source for i in imports] == ["./foo", "./bar"]
        assert imports[0].named_imports == ("foo",)

    def test_exports(self, parse):
        root = parse(
            "export function foo() {}\n"
            "export class Bar {}\n"
            "export const x = 1, y = 2;\n"
            "export interface Shape {}\n"
            "export type Id = string;\n"
            "const hidden = 3;\n"
            "export { hidden as visible };\n"
            "export default foo;\n"
            "export * from './more';\n"
        )
        assert extract_ts_exports(root) == {
            "foo", "Bar", "x", "y", "Shape", "Id", "visible", "default", "*:./more",
        }

    def test_tsx_component(self, parse):
        root = parse(
            "import { h } from './h';\nexport default function App() { return <div/>; }\n",
            grammar="tsx",
        )
        assert extract_ts_exports(root) == {"default"}
        assert extract_ts_imports(root)[0].source == "./h"


class TestPythonExtraction:
    """Tests for the Python extractors (tree-sitter and ast fallback)."""

    SOURCE = (
        "import os\n"
        "import numpy as np\n"
        "from .helpers import slugify, Thing as T\n"
        "from .. import models\n"
        "from pkg.mod import *\n"
        "\n"
        "CONSTANT = 1\n"
        "_private = 2\n"
        "def run():\n    pass\n"
        "class Service:\n    pass\n"
    )

    def _check_imports(self, imports):
        assert [i.source for i in imports] == ["os", "numpy", ".helpers", "..", "pkg.mod"]
        assert imports[1].default_import == "np"
        assert imports[2].named_imports == ("slugify", "Thing")
        assert imports[2].is_relative
        assert imports[3].is_relative
        assert not imports[4].is_relative
        assert "*" in imports[4].named_imports

    def test_tree_sitter_imports(self):
        pytest.importorskip("tree_sitter_python")
        root = GrammarLoader().parse("python", self.SOURCE)
        self._check_imports(extract_python_imports(root))

    def test_ast_imports(self):
        self._check_imports(ast_python_imports(self.SOURCE))

    def test_tree_sitter_exports(self):
        pytest.importorskip("tree_sitter_python")
        root = GrammarLoader().parse("python", self.SOURCE)
        assert extract_python_exports(root) == {"CONSTANT", "run", "Service"}

    def test_ast_exports(self):
        assert ast_python_exports(self.SOURCE) == {"CONSTANT", "run", "Service"}

    def test_dunder_all_wins(self):
        source = "__all__ = ['run']\ndef run(): pass\ndef other(): pass\n"
        assert ast_python_exports(source) == {"run"}

    def test_ast_syntax_error(self):
        with pytest.raises(ParseError):
            ast_python_imports("def broken(:\n")
