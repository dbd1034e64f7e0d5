"""The user's org/project/branch/driver selection."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from neonlocal.domains.proxy.domain.config import ConnectionType, Driver

SELECTION_FIELDS = (
    "org_id",
    "project_id",
    "branch_id",
    "parent_branch_id",
    "driver",
    "connection_type",
)


@dataclass(frozen=True)
class Selection:
    """What the user picked, independent of what is actually running.

    ``branch_id`` is only meaningful in existing-branch mode and
    ``parent_branch_id`` only in new-branch mode.
    """

    org_id: str = ""
    project_id: str = ""
    branch_id: str = ""
    parent_branch_id: str = ""
    driver: Driver = Driver.POSTGRES
    connection_type: ConnectionType = ConnectionType.EXISTING

    @property
    def target_branch_id(self) -> str:
        """The branch a start would use: the branch itself or the parent to fork."""
        if self.connection_type is ConnectionType.NEW:
            return self.parent_branch_id
        return self.branch_id

    def with_org(self, org_id: str) -> Selection:
        org_id = org_id or ""
        if org_id == self.org_id:
            return self
        return replace(self, org_id=org_id, project_id="", branch_id="", parent_branch_id="")

    def with_project(self, project_id: str) -> Selection:
        project_id = project_id or ""
        if project_id == self.project_id:
            return self
        return replace(self, project_id=project_id, branch_id="", parent_branch_id="")

    def with_branch(self, branch_id: str) -> Selection:
        return replace(self, branch_id=branch_id or "")

    def with_parent_branch(self, parent_branch_id: str) -> Selection:
        return replace(self, parent_branch_id=parent_branch_id or "")

    def with_driver(self, driver: str | Driver) -> Selection:
        return replace(self, driver=Driver.parse(driver))

    def with_connection_type(self, connection_type: str | ConnectionType) -> Selection:
        return replace(self, connection_type=ConnectionType.parse(connection_type))

    def for_start(self, connection_type: ConnectionType, branch_id: str, driver: Driver) -> Selection:
        """Selection as persisted when a start is requested."""
        if connection_type is ConnectionType.EXISTING:
            return replace(
                self,
                connection_type=connection_type,
                branch_id=branch_id,
                parent_branch_id="",
                driver=driver,
            )
        return replace(
            self,
            connection_type=connection_type,
            branch_id="",
            parent_branch_id=branch_id,
            driver=driver,
        )

    def changed_fields(self, previous: Selection) -> dict[str, Any]:
        """Fields whose value differs from ``previous``, for a partial store update."""
        return {name: getattr(self, name) for name in SELECTION_FIELDS if getattr(self, name) != getattr(previous, name)}

    def to_dict(self) -> dict[str, str]:
        data = asdict(self)
        data["driver"] = self.driver.value
        data["connection_type"] = self.connection_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Selection:
        data = data if isinstance(data, dict) else {}

        def text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        selection = cls(
            org_id=text("org_id"),
            project_id=text("project_id"),
            branch_id=text("branch_id"),
            parent_branch_id=text("parent_branch_id"),
            driver=Driver.parse(text("driver")),
            connection_type=ConnectionType.parse(text("connection_type")),
        )
        if not selection.project_id:
            # Branches without a project are meaningless
            selection = replace(selection, branch_id="", parent_branch_id="")
        return selection
