"""Pydantic v2 models describing the sites to update."""

from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SiteDescriptor(BaseModel):
    """One entry of drupalup.sites.yml. ``uri`` may be a string or a list (multisite)."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    uris: tuple[str, ...] = Field(validation_alias=AliasChoices("uri", "uris"))
    path: str
    prod_alias_name_match: str

    @field_validator("uris", mode="before")
    @classmethod
    def _coerce_uris(cls, value):
        if isinstance(value, str):
            value = [value]
        if not value:
            raise ValueError("No URI(s) provided.")
        uris = []
        for uri in value:
            uri = str(uri).strip()
            if uri and uri not in uris:
                uris.append(uri)
        if not uris:
            raise ValueError("No URI(s) provided.")
        return tuple(uris)

    @field_validator("path")
    @classmethod
    def _existing_directory(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("No path provided.")
        if not Path(value).is_dir():
            raise ValueError("The path provided is not a directory that exists.")
        return value

    @field_validator("prod_alias_name_match")
    @classmethod
    def _non_empty_match(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("No prod alias name match provided.")
        return value

    @property
    def primary_uri(self) -> str:
        return self.uris[0]

    @property
    def is_multisite(self) -> bool:
        return len(self.uris) > 1


class StatusRecord(BaseModel):
    """The subset of ``drush status --format=json`` the workflow relies on."""

    model_config = ConfigDict(extra="ignore")

    root: str
    files: str
