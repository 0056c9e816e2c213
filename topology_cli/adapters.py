"""Language adapter registry.

An adapter is a plain capability record: the extensions it claims, a
``parse`` callable producing a :class:`ParsedFile` and an
``extract_export_signature`` callable used when comparing a file against
its base-branch version.  Adding a language means registering one more
record; nothing else in the pipeline changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Dict, List, Optional, Tuple

from .models import ParsedFile
from .parser import (
    GrammarLoader,
    ParseError,
    ast_python_exports,
    ast_python_imports,
    content_hash,
    extract_python_exports,
    extract_python_imports,
    extract_ts_exports,
    extract_ts_imports,
    signature_hash,
    ts_grammar_for,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageAdapter:
    name: str
    extensions: Tuple[str, ...]
    parse: Callable[[str, str], ParsedFile]
    extract_export_signature: Callable[[str, str], str]


class AdapterRegistry:
    """Extension -> adapter map.  The last registration for an extension wins."""

    def __init__(self) -> None:
        self._by_ext: Dict[str, LanguageAdapter] = {}

    def register(self, adapter: LanguageAdapter) -> None:
        for ext in adapter.extensions:
            key = ext.lower()
            previous = self._by_ext.get(key)
            if previous is not None:
                logger.warning(
                    "Extension %s re-registered: '%s' replaces '%s'",
                    key, adapter.name, previous.name,
                )
            self._by_ext[key] = adapter

    def resolve(self, extension: str) -> Optional[LanguageAdapter]:
        return self._by_ext.get(extension.lower())

    def for_path(self, path: str) -> Optional[LanguageAdapter]:
        return self.resolve(PurePosixPath(path).suffix)

    def supported_extensions(self) -> List[str]:
        return sorted(self._by_ext)

    def parse(self, content: str, path: str) -> Optional[ParsedFile]:
        """Parse *content*; ``None`` for unmapped extensions and failures."""
        adapter = self.for_path(path)
        if adapter is None:
            return None
        try:
            return adapter.parse(content, path)
        except Exception as exc:
            logger.warning("Failed to parse %s: %s", path, exc)
            return None


# ===================================================================
# Built-in adapters
# ===================================================================

TS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
PY_EXTENSIONS = (".py",)


def _ts_language(path: str) -> str:
    return "typescript" if path.lower().endswith((".ts", ".tsx")) else "javascript"


def typescript_adapter(loader: GrammarLoader) -> LanguageAdapter:
    def parse(content: str, path: str) -> ParsedFile:
        root = loader.parse(ts_grammar_for(path), content)
        return ParsedFile(
            file_path=path,
            language=_ts_language(path),
            imports=tuple(extract_ts_imports(root)),
            export_signature=signature_hash(extract_ts_exports(root)),
            content_hash=content_hash(content),
        )

    def export_signature(content: str, path: str) -> str:
        root = loader.parse(ts_grammar_for(path), content)
        return signature_hash(extract_ts_exports(root))

    return LanguageAdapter("typescript", TS_EXTENSIONS, parse, export_signature)


def python_adapter(loader: GrammarLoader) -> LanguageAdapter:
    def parse(content: str, path: str) -> ParsedFile:
        try:
            root = loader.parse("python", content)
            imports = extract_python_imports(root)
            exports = extract_python_exports(root)
        except ParseError:
            imports = ast_python_imports(content)
            exports = ast_python_exports(content)
        return ParsedFile(
            file_path=path,
            language="python",
            imports=tuple(imports),
            export_signature=signature_hash(exports),
            content_hash=content_hash(content),
        )

    def export_signature(content: str, path: str) -> str:
        try:
            exports = extract_python_exports(loader.parse("python", content))
        except ParseError:
            exports = ast_python_exports(content)
        return signature_hash(exports)

    return LanguageAdapter("python", PY_EXTENSIONS, parse, export_signature)


def default_registry() -> AdapterRegistry:
    """A fresh registry with the TypeScript/JavaScript and Python adapters."""
    loader = GrammarLoader()
    registry = AdapterRegistry()
    registry.register(typescript_adapter(loader))
    registry.register(python_adapter(loader))
    return registry
