import re
from collections.abc import Iterable, Iterator, Mapping

from pydantic import BaseModel, ConfigDict

from jsimport.config import ImportConfig
from jsimport.indexer.file_index import FileIndex
from jsimport.indexer.paths import is_under
from jsimport.indexer.scan import ExcludeFilter

_EXTENSION = re.compile(r"\.js.*$")
_DIRECTORY_MAIN = re.compile(r"/(index|package)$")


class ModuleCandidate(BaseModel):
    """A module that could be imported to define an identifier."""

    model_config = ConfigDict(frozen=True)

    lookup_path: str
    import_path: str
    is_destructured: bool = False
    display_name: str
    file_path: str | None = None


def identifier_pattern(identifier: str) -> str:
    """Turn dash-separated, snake_case, camelCase or PascalCase into a regex.

    Words are joined by ``.`` (``-``/``_``) or ``.?`` (case change), so
    ``fooBar`` matches ``foo_bar``, ``foo-bar`` and ``FooBar`` alike.
    """
    pattern = re.sub(r"([a-z\d])([A-Z])", r"\1.?\2", identifier)
    pattern = pattern.replace("-", ".").replace("_", ".").replace("$", r"\$")
    return pattern.lower()


def file_regex(identifier: str) -> re.Pattern[str]:
    return re.compile(
        rf"(/|^){identifier_pattern(identifier)}(/index)?(/package)?\.js.*",
        re.IGNORECASE,
    )


def module_for_file(lookup_path: str, file_path: str) -> ModuleCandidate:
    """Derive the import path of a file found below a lookup path."""
    relative = file_path[len(lookup_path) + 1 :] if lookup_path else file_path
    import_path = _EXTENSION.sub("", relative)

    display_name = import_path
    if _DIRECTORY_MAIN.search(import_path):
        main_file = relative.rsplit("/", 1)[1]
        import_path = _DIRECTORY_MAIN.sub("", import_path)
        display_name = f"{import_path} (main: {main_file})"

    return ModuleCandidate(
        lookup_path=lookup_path,
        import_path=import_path,
        display_name=display_name,
        file_path=file_path,
    )


def dedupe_candidates(candidates: Iterable[ModuleCandidate]) -> list[ModuleCandidate]:
    """Keep one candidate per file, the one with the shortest import path.

    Overlapping lookup paths can reach one file twice. The sort is stable, so
    among equal lengths the candidate found first (earlier lookup path) wins.
    With validated lookup paths that tie does not happen: different prefixes
    of one file path always leave import paths of different lengths.
    """
    unique: dict[str | None, ModuleCandidate] = {}
    for candidate in sorted(candidates, key=lambda candidate: len(candidate.import_path)):
        unique.setdefault(candidate.file_path, candidate)
    return list(unique.values())


class ModuleResolver:
    """Resolves unqualified identifiers to importable modules."""

    def __init__(self, config: ImportConfig, index: FileIndex):
        self.config = config
        self.index = index
        self.excludes = ExcludeFilter(config.excludes)

    def resolve(self, identifier: str) -> list[ModuleCandidate]:
        """Ordered candidates for identifier: empty, one, or many."""
        alias = self.config.resolve_alias(identifier)
        if alias is not None:
            return [
                ModuleCandidate(
                    lookup_path="",
                    import_path=alias.path,
                    is_destructured=alias.destructured,
                    display_name=alias.path,
                )
            ]

        matches = self._find_matches(identifier, self.index.snapshot())
        return sorted(dedupe_candidates(matches), key=lambda candidate: candidate.display_name)

    def _find_matches(self, identifier: str, files: Mapping[str, int]) -> Iterator[ModuleCandidate]:
        regex = file_regex(identifier)
        paths = sorted(files)
        for lookup_path in self.config.lookup_paths:
            for path in paths:
                if not is_under(path, lookup_path):
                    continue
                relative = path[len(lookup_path) + 1 :] if lookup_path else path
                if not regex.search(relative):
                    continue
                if self.excludes.is_excluded(path):
                    continue
                yield module_for_file(lookup_path, path)
