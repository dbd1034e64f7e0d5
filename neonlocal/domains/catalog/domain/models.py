"""Records returned by the Neon API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

PERSONAL_ACCOUNT_NAME = "Personal account"


def _str(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    return default if value is None else str(value)


@dataclass(frozen=True)
class Organization:
    id: str
    name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Organization:
        return cls(id=_str(data, "id"), name=_str(data, "name"))

    @property
    def is_personal(self) -> bool:
        return not self.id


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    org_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        return cls(id=_str(data, "id"), name=_str(data, "name"), org_id=_str(data, "org_id"))


@dataclass(frozen=True)
class Branch:
    id: str
    name: str
    project_id: str = ""
    parent_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Branch:
        parent_id = data.get("parent_id")
        return cls(
            id=_str(data, "id"),
            name=_str(data, "name"),
            project_id=_str(data, "project_id"),
            parent_id=str(parent_id) if parent_id else None,
        )

    @property
    def has_parent(self) -> bool:
        return bool(self.parent_id)


@dataclass(frozen=True)
class Database:
    name: str
    owner_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Database:
        return cls(name=_str(data, "name"), owner_name=_str(data, "owner_name"))


@dataclass(frozen=True)
class Role:
    name: str
    protected: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Role:
        return cls(name=_str(data, "name"), protected=bool(data.get("protected", False)))


@dataclass(frozen=True)
class Endpoint:
    id: str
    host: str
    type: str = "read_write"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Endpoint:
        return cls(id=_str(data, "id"), host=_str(data, "host"), type=_str(data, "type", "read_write"))
