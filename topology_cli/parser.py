"""Import / export extraction built on Tree-sitter.

Each supported language gets two extractors:

- an *import extractor* returning :class:`~topology_cli.models.ParsedImport`
  records in source order, and
- an *export extractor* returning the set of exported names, which is
  hashed into a short, order-independent export signature.

Grammars are loaded lazily from the per-language packages
(``tree-sitter-python``, ``tree-sitter-typescript``).  Python falls back to
the built-in ``ast`` module when tree-sitter is unavailable.
"""

from __future__ import annotations

import ast
import hashlib
import importlib
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .models import ParsedImport

logger = logging.getLogger(__name__)


class ParseError(Exception):
    """Raised when a file cannot be turned into a syntax tree."""


def content_hash(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded file content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def signature_hash(names: Iterable[str]) -> str:
    """Order-independent digest of a set of exported names."""
    joined = ",".join(sorted(set(names)))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


def is_relative_source(source: str) -> bool:
    return source.startswith(".") or source.startswith("/")


# ===================================================================
# Grammar loading
# ===================================================================

class GrammarLoader:
    """Lazily build one tree-sitter parser per grammar."""

    # grammar name -> (module, attribute returning the Language capsule)
    _GRAMMAR_MODULES: Dict[str, Tuple[str, str]] = {
        "python": ("tree_sitter_python", "language"),
        "typescript": ("tree_sitter_typescript", "language_typescript"),
        "tsx": ("tree_sitter_typescript", "language_tsx"),
    }

    def __init__(self) -> None:
        self._parsers: Dict[str, Any] = {}
        self._missing: Set[str] = set()

    def get(self, grammar: str) -> Optional[Any]:
        if grammar in self._parsers:
            return self._parsers[grammar]
        if grammar in self._missing:
            return None

        spec = self._GRAMMAR_MODULES.get(grammar)
        if spec is None:
            logger.warning("No grammar module mapped for '%s'", grammar)
            self._missing.add(grammar)
            return None

        mod_name, attr = spec
        try:
            from tree_sitter import Language, Parser as TSParser

            mod = importlib.import_module(mod_name)
            parser = TSParser(Language(getattr(mod, attr)()))
        except ImportError:
            logger.warning(
                "Grammar package '%s' not installed for '%s'. "
                "Install with: pip install tree-sitter %s",
                mod_name, grammar, mod_name.replace("_", "-"),
            )
            self._missing.add(grammar)
            return None
        except Exception as exc:
            logger.warning("Could not load tree-sitter grammar for %s: %s", grammar, exc)
            self._missing.add(grammar)
            return None

        self._parsers[grammar] = parser
        logger.debug("Loaded tree-sitter parser for %s", grammar)
        return parser

    def parse(self, grammar: str, content: str) -> Any:
        parser = self.get(grammar)
        if parser is None:
            raise ParseError(f"tree-sitter grammar '{grammar}' unavailable")
        return parser.parse(content.encode("utf-8")).root_node


def _text(node: Any) -> str:
    return node.text.decode("utf-8")


def _string_value(node: Any) -> str:
    """Strip the quotes from a string literal node."""
    for child in node.children:
        if child.type == "string_fragment":
            return _text(child)
    raw = _text(node)
    if len(raw) >= 2 and raw[0] in "'\"`" and raw[-1] == raw[0]:
        return raw[1:-1]
    return raw


# ===================================================================
# TypeScript / JavaScript
# ===================================================================

_TS_DECLARATIONS = {
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "abstract_class_declaration",
    "interface_declaration",
    "type_alias_declaration",
    "enum_declaration",
}


def ts_grammar_for(path: str) -> str:
    return "tsx" if path.lower().endswith((".tsx", ".jsx")) else "typescript"


def extract_ts_imports(root: Any) -> List[ParsedImport]:
    """Collect ``import ...`` statements and ``export ... from`` re-exports."""
    imports: List[ParsedImport] = []
    for child in root.children:
        if child.type == "import_statement":
            src_node = child.child_by_field_name("source")
            if src_node is None:
                continue
            source = _string_value(src_node)
            default: Optional[str] = None
            named: List[str] = []
            for sub in child.children:
                if sub.type != "import_clause":
                    continue
                for part in sub.children:
                    if part.type == "identifier":
                        default = _text(part)
                    elif part.type == "namespace_import":
                        ident = [c for c in part.children if c.type == "identifier"]
                        if ident:
                            default = f"* as {_text(ident[-1])}"
                    elif part.type == "named_imports":
                        for spec in part.children:
                            if spec.type == "import_specifier":
                                name = spec.child_by_field_name("name")
                                if name is not None:
                                    named.append(_text(name))
            imports.append(ParsedImport(
                source=source,
                named_imports=tuple(named),
                default_import=default,
                is_relative=is_relative_source(source),
            ))

        elif child.type == "export_statement":
            src_node = child.child_by_field_name("source")
            if src_node is None:
                continue
            source = _string_value(src_node)
            named = []
            for sub in child.children:
                if sub.type == "export_clause":
                    for spec in sub.children:
                        if spec.type == "export_specifier":
                            name = spec.child_by_field_name("name")
                            if name is not None:
                                named.append(_text(name))
            imports.append(ParsedImport(
                source=source,
                named_imports=tuple(named),
                default_import=None,
                is_relative=is_relative_source(source),
            ))
    return imports


def _declarator_names(node: Any) -> List[str]:
    names = []
    for child in node.children:
        if child.type == "variable_declarator":
            name = child.child_by_field_name("name")
            if name is not None:
                names.append(_text(name))
    return names


def extract_ts_exports(root: Any) -> Set[str]:
    """Names exported by a module, ``default`` and ``*:<source>`` included."""
    names: Set[str] = set()
    for child in root.children:
        if child.type != "export_statement":
            continue
        child_types = [c.type for c in child.children]

        if "default" in child_types:
            names.add("default")
            continue

        source = child.child_by_field_name("source")
        if source is not None and "*" in child_types and "export_clause" not in child_types:
            names.add(f"*:{_string_value(source)}")
            continue

        declaration = child.child_by_field_name("declaration")
        if declaration is not None:
            if declaration.type in ("lexical_declaration", "variable_declaration"):
                names.update(_declarator_names(declaration))
            elif declaration.type in _TS_DECLARATIONS:
                name = declaration.child_by_field_name("name")
                if name is not None:
                    names.add(_text(name))
            continue

        for sub in child.children:
            if sub.type == "namespace_export":
                ident = [c for c in sub.children if c.type == "identifier"]
                if ident:
                    names.add(_text(ident[-1]))
            elif sub.type == "export_clause":
                for spec in sub.children:
                    if spec.type != "export_specifier":
                        continue
                    alias = spec.child_by_field_name("alias")
                    name = spec.child_by_field_name("name")
                    exported = alias if alias is not None else name
                    if exported is not None:
                        names.add(_text(exported))
    return names


# ===================================================================
# Python
# ===================================================================

def extract_python_imports(root: Any) -> List[ParsedImport]:
    imports: List[ParsedImport] = []
    for child in root.children:
        if child.type == "import_statement":
            for sub in child.children:
                if sub.type == "dotted_name":
                    imports.append(ParsedImport(source=_text(sub)))
                elif sub.type == "aliased_import":
                    name_n = sub.child_by_field_name("name")
                    alias_n = sub.child_by_field_name("alias")
                    if name_n is not None:
                        imports.append(ParsedImport(
                            source=_text(name_n),
                            default_import=_text(alias_n) if alias_n is not None else None,
                        ))

        elif child.type == "import_from_statement":
            mod_node = child.child_by_field_name("module_name")
            if mod_node is None:
                continue
            source = _text(mod_node)
            named: List[str] = []
            for name_n in child.children_by_field_name("name"):
                if name_n.type == "aliased_import":
                    inner = name_n.child_by_field_name("name")
                    if inner is not None:
                        named.append(_text(inner))
                else:
                    named.append(_text(name_n))
            if any(c.type == "wildcard_import" for c in child.children):
                named.append("*")
            imports.append(ParsedImport(
                source=source,
                named_imports=tuple(named),
                is_relative=mod_node.type == "relative_import",
            ))
    return imports


def _python_all_names(node: Any) -> Optional[List[str]]:
    """Return the literal contents of ``__all__ = [...]`` if *node* is one."""
    if node.type != "expression_statement" or not node.children:
        return None
    assign = node.children[0]
    if assign.type != "assignment":
        return None
    left = assign.child_by_field_name("left")
    right = assign.child_by_field_name("right")
    if left is None or right is None or _text(left) != "__all__":
        return None
    if right.type not in ("list", "tuple"):
        return None
    return [_string_value(c) for c in right.children if c.type == "string"]


def extract_python_exports(root: Any) -> Set[str]:
    public: Set[str] = set()
    for child in root.children:
        declared = _python_all_names(child)
        if declared is not None:
            return set(declared)

        node = child
        if node.type == "decorated_definition":
            node = node.child_by_field_name("definition") or node
        if node.type in ("function_definition", "class_definition"):
            name = node.child_by_field_name("name")
            if name is not None:
                public.add(_text(name))
        elif node.type == "expression_statement" and node.children:
            assign = node.children[0]
            if assign.type == "assignment":
                left = assign.child_by_field_name("left")
                if left is not None and left.type == "identifier":
                    public.add(_text(left))
    return {n for n in public if not n.startswith("_")}


# ------------------------------------------------------------------
# ast fallback (no tree-sitter installed)
# ------------------------------------------------------------------

def ast_python_imports(content: str) -> List[ParsedImport]:
    try:
        tree = ast.parse(content)
    except SyntaxError as exc:
        raise ParseError(str(exc)) from exc

    imports: List[ParsedImport] = []
    for stmt in tree.body:
        if isinstance(stmt, ast.Import):
            for alias in stmt.names:
                imports.append(ParsedImport(source=alias.name, default_import=alias.asname))
        elif isinstance(stmt, ast.ImportFrom):
            source = "." * stmt.level + (stmt.module or "")
            imports.append(ParsedImport(
                source=source,
                named_imports=tuple(a.name for a in stmt.names),
                is_relative=stmt.level > 0,
            ))
    return imports


def ast_python_exports(content: str) -> Set[str]:
    try:
        tree = ast.parse(content)
    except SyntaxError as exc:
        raise ParseError(str(exc)) from exc

    public: Set[str] = set()
    for stmt in tree.body:
        if isinstance(stmt, ast.Assign):
            targets = [t.id for t in stmt.targets if isinstance(t, ast.Name)]
            if "__all__" in targets and isinstance(stmt.value, (ast.List, ast.Tuple)):
                return {
                    e.value for e in stmt.value.elts
                    if isinstance(e, ast.Constant) and isinstance(e.value, str)
                }
            public.update(targets)
        elif isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            public.add(stmt.name)
    return {n for n in public if not n.startswith("_")}
