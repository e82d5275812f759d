"""Configuration consumed by the resolver, the watcher and the import editor."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jsimport.indexer.paths import normalize_lookup_path


class AliasSpec(BaseModel):
    """Explicit module for an identifier, bypassing the file search."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1)
    destructured: bool = False


class ImportConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lookup_paths: list[str] = Field(default_factory=lambda: ["."], validate_default=True)
    excludes: list[str] = Field(default_factory=list)
    aliases: dict[str, str | AliasSpec] = Field(default_factory=dict)
    declaration_keyword: Literal["const", "let", "var"] = "const"
    text_width: int | None = Field(default=None, ge=1)
    indent_unit: str = "  "
    poll_interval: float = Field(default=30.0, gt=0)

    @field_validator("lookup_paths")
    @classmethod
    def normalize_lookup_paths(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for lookup_path in value:
            lookup_path = normalize_lookup_path(lookup_path)
            if lookup_path not in normalized:
                normalized.append(lookup_path)
        return normalized

    def resolve_alias(self, identifier: str) -> AliasSpec | None:
        alias = self.aliases.get(identifier)
        if alias is None:
            return None
        if isinstance(alias, str):
            return AliasSpec(path=alias)
        return alias
