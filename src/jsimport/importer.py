"""
Importer - resolve identifiers and write their imports into a buffer.

Editor integration, the linter that finds undefined identifiers and the UI
that picks between several modules are collaborators passed in as callables.
"""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from jsimport.config import ImportConfig
from jsimport.editor.imports import merge_import
from jsimport.indexer.file_index import FileIndex
from jsimport.indexer.resolver import ModuleCandidate, ModuleResolver
from jsimport.indexer.watcher import Watcher

Chooser = Callable[[str, list[ModuleCandidate]], ModuleCandidate | None]
UndefinedIdentifiers = Callable[[str], Iterable[str]]


def _no_choice(_identifier: str, _candidates: list[ModuleCandidate]) -> ModuleCandidate | None:
    return None


@dataclass
class ImportResult:
    text: str
    candidate: ModuleCandidate | None = None
    lines_added: int = 0


class Importer:
    def __init__(
        self,
        config: ImportConfig,
        source: Watcher | FileIndex,
        chooser: Chooser = _no_choice,
        message: Callable[[str], None] = print,
    ):
        self.config = config
        self.watcher = source if isinstance(source, Watcher) else None
        index = source.index if isinstance(source, Watcher) else source
        self.resolver = ModuleResolver(config, index)
        self.chooser = chooser
        self.message = message

    def _find_candidates(self, identifier: str) -> tuple[list[ModuleCandidate], str]:
        if self.watcher is not None:
            self.watcher.check_subscription()
        start = time.perf_counter()
        candidates = self.resolver.resolve(identifier)
        return candidates, f"({time.perf_counter() - start:.2f}s)"

    def _resolve_one(self, identifier: str) -> ModuleCandidate | None:
        candidates, timing = self._find_candidates(identifier)
        if not candidates:
            self.message(
                f"[jsimport] No js module to import for variable `{identifier}` {timing}"
            )
            return None
        if len(candidates) == 1:
            self.message(f"[jsimport] Imported `{candidates[0].display_name}` {timing}")
            return candidates[0]
        return self.chooser(identifier, candidates)

    def import_identifier(self, buffer_text: str, identifier: str) -> ImportResult:
        """Import one identifier, usually the word under the cursor."""
        if not identifier:
            self.message(
                "[jsimport] No variable to import. Place your cursor on a variable, then try again."
            )
            return ImportResult(text=buffer_text)

        candidate = self._resolve_one(identifier)
        if candidate is None:
            return ImportResult(text=buffer_text)

        text = merge_import(
            buffer_text,
            identifier,
            candidate,
            declaration_keyword=self.config.declaration_keyword,
            text_width=self.config.text_width,
            indent_unit=self.config.indent_unit,
        )
        return ImportResult(
            text=text,
            candidate=candidate,
            lines_added=text.count("\n") - buffer_text.count("\n"),
        )

    def import_all(
        self, buffer_text: str, undefined_identifiers: UndefinedIdentifiers
    ) -> ImportResult:
        """Import every identifier the linter reports as undefined."""
        identifiers = list(dict.fromkeys(undefined_identifiers(buffer_text)))
        if not identifiers:
            self.message("[jsimport] No variables to import")
            return ImportResult(text=buffer_text)

        text = buffer_text
        for identifier in identifiers:
            text = self.import_identifier(text, identifier).text
        return ImportResult(text=text, lines_added=text.count("\n") - buffer_text.count("\n"))

    def goto(self, identifier: str) -> str | None:
        """File path of the module an identifier resolves to."""
        candidates, _timing = self._find_candidates(identifier)
        if not candidates:
            return None
        candidate = candidates[0] if len(candidates) == 1 else self.chooser(identifier, candidates)
        return candidate.file_path if candidate else None
