"""
Import block editing.

The import block is the run of ``require`` declarations at the top of a
buffer, up to the first blank line. Parsing stops at the first chunk that is
not an import; that chunk and the lines after it are left as they are.
Text following an import on its own line stays attached to that import.
Everything here is pure text in, text out.
"""

import re
from dataclasses import dataclass, replace

from jsimport.indexer.resolver import ModuleCandidate

_STATEMENT = re.compile(
    r"\s*(?P<keyword>const|let|var)\s+(?P<target>[A-Za-z_$][\w$]*|\{[^{}]*\})\s*=\s*"
    r"require\(\s*(?P<quote>['\"])(?P<path>[^'\"\n]*)(?P=quote)\s*\)\s*;"
)
_IDENTIFIER = re.compile(r"[A-Za-z_$][\w$]*")
_DECLARATION = re.compile(r"\A(const|let|var)\s+")
_WHITESPACE = re.compile(r"\s+")
_DASH_WORD = re.compile(r"-+([^-])")


def to_binding(identifier: str) -> str:
    """Name to declare for identifier; dash-separated words become camelCase."""
    return _DASH_WORD.sub(lambda match: match[1].upper(), identifier).strip("-")


@dataclass
class ImportStatement:
    raw: str
    keyword: str
    import_path: str
    quote: str = "'"
    identifier: str | None = None
    members: list[str] | None = None
    # Text after the statement on its last line, e.g. a lint comment
    trailing: str = ""

    @classmethod
    def parse(cls, text: str) -> "ImportStatement | None":
        """Parse one statement, or return None if text is not an import."""
        match = _STATEMENT.fullmatch(text)
        if not match:
            return None

        target = match["target"]
        fields = {
            "raw": text,
            "keyword": match["keyword"],
            "import_path": match["path"],
            "quote": match["quote"],
        }
        if not target.startswith("{"):
            return cls(identifier=target, **fields)

        members = [member.strip() for member in target[1:-1].split(",")]
        if members and not members[-1]:
            members.pop()  # trailing comma
        if not members or not all(_IDENTIFIER.fullmatch(m) for m in members):
            return None
        return cls(members=members, **fields)

    @property
    def is_destructured(self) -> bool:
        return self.members is not None

    @property
    def key(self) -> str:
        """Equality key: no declaration keyword, whitespace runs collapsed."""
        return _WHITESPACE.sub(" ", _DECLARATION.sub("", self.raw.strip()))


@dataclass
class ImportBlock:
    statements: list[ImportStatement]
    line_count: int


def _line_end(blob: str, position: int) -> int:
    line_end = blob.find("\n", position)
    return len(blob) if line_end == -1 else line_end


def find_import_block(lines: list[str]) -> ImportBlock:
    potential_import_lines: list[str] = []
    for line in lines:
        if not line.strip():
            break
        potential_import_lines.append(line)

    # Join back into a blob so multi-line statements can be scanned
    blob = "\n".join(potential_import_lines)

    statements: list[ImportStatement] = []
    position = 0
    # Index just past the last line that belongs to the block
    consumed = 0
    while position < len(blob):
        mid_line = position > 0 and blob[position - 1] != "\n"
        end = blob.find(";", position)
        chunk = blob[position : end + 1] if end != -1 else ""
        statement = ImportStatement.parse(chunk.lstrip() if mid_line else chunk)

        if statement is None:
            if not mid_line:
                break
            # The rest of a line that started with an import stays with it
            line_end = _line_end(blob, position)
            statements[-1].trailing = blob[position:line_end]
            position = consumed = line_end + 1
            continue

        statements.append(statement)
        line_end = _line_end(blob, end)
        if blob[end + 1 : line_end].strip():
            position = end + 1
        else:
            position = consumed = line_end + 1

    line_count = blob.count("\n", 0, consumed) + (1 if consumed > len(blob) else 0)
    return ImportBlock(statements=statements, line_count=line_count)


def render_import(
    keyword: str,
    import_path: str,
    identifier: str | None = None,
    members: list[str] | None = None,
    quote: str = "'",
    text_width: int | None = None,
    indent_unit: str = "  ",
) -> str:
    """Render a statement, wrapping after ``=`` when it exceeds text_width."""
    if members is not None:
        declaration = f"{keyword} {{ {', '.join(members)} }} ="
    else:
        declaration = f"{keyword} {identifier} ="
    value = f"require({quote}{import_path}{quote});"

    line = f"{declaration} {value}"
    if text_width and len(line) > text_width:
        return f"{declaration}\n{indent_unit}{value}"
    return line


def _inject_member(
    statements: list[ImportStatement],
    identifier: str,
    candidate: ModuleCandidate,
    text_width: int | None,
    indent_unit: str,
) -> bool:
    for i, statement in enumerate(statements):
        if not statement.is_destructured or statement.import_path != candidate.import_path:
            continue

        members = sorted({*statement.members, identifier})
        raw = render_import(
            statement.keyword,
            statement.import_path,
            members=members,
            quote=statement.quote,
            text_width=text_width,
            indent_unit=indent_unit,
        )
        statements[i] = replace(statement, raw=raw, members=members)
        return True
    return False


def merge_import(
    buffer_text: str,
    identifier: str,
    candidate: ModuleCandidate,
    declaration_keyword: str = "const",
    text_width: int | None = None,
    indent_unit: str = "  ",
) -> str:
    """Return buffer_text with identifier imported from candidate."""
    identifier = to_binding(identifier)
    lines = buffer_text.split("\n")
    block = find_import_block(lines)
    statements = list(block.statements)

    if not (
        candidate.is_destructured
        and _inject_member(statements, identifier, candidate, text_width, indent_unit)
    ):
        members = [identifier] if candidate.is_destructured else None
        raw = render_import(
            declaration_keyword,
            candidate.import_path,
            identifier=None if members else identifier,
            members=members,
            text_width=text_width,
            indent_unit=indent_unit,
        )
        statements.append(
            ImportStatement(
                raw=raw,
                keyword=declaration_keyword,
                import_path=candidate.import_path,
                identifier=None if members else identifier,
                members=members,
            )
        )

    merged: list[ImportStatement] = []
    seen: set[str] = set()
    for statement in sorted(statements, key=lambda s: s.raw):
        if statement.key in seen:
            continue
        seen.add(statement.key)
        merged.append(statement)

    rest = lines[block.line_count :]
    new_lines = [
        line for statement in merged for line in (statement.raw + statement.trailing).split("\n")
    ]
    # Exactly one blank line between the block and what follows
    if rest and rest[0].strip():
        new_lines.append("")
    return "\n".join(new_lines + rest)
