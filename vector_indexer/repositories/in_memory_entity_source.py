"""In-memory entity source.

Holds business rows in plain dicts and answers the same reads and
relationship lookups as the PostgreSQL source. Used by tests and by local
runs without a database.
"""

from typing import Any, Optional

from .entity_source import (
    EntitySource,
    EpicRecord,
    EpicSummary,
    ProfileRecord,
    ProjectMembers,
    ProjectRecord,
    ProjectSummary,
    RelatedRow,
    SprintRecord,
    SprintSummary,
    TaskRecord,
    TicketRecord,
    TicketSummary,
)

_TABLES = ("projects", "tickets", "epics", "sprints", "tasks")


class InMemoryEntitySource(EntitySource):
    """Dict-backed business tables.

    Example:
        >>> source = InMemoryEntitySource()
        >>> source.add_project("p1", "w1", name="Website", slug="web")
        >>> source.add_ticket("42", "w1", title="Fix login bug", project_id="p1")
    """

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, dict[str, Any]]] = {table: {} for table in _TABLES}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.workspaces: dict[str, str] = {}
        self.labels: dict[str, str] = {}
        self.ticket_labels: list[tuple[str, str]] = []
        self.ticket_dependencies: list[tuple[str, str]] = []
        self.task_tickets: list[tuple[str, str]] = []

    # ------------------------------------------------------------------
    # Fixture helpers
    # ------------------------------------------------------------------

    def _add(self, table: str, entity_id: Any, workspace_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        row = {"id": str(entity_id), "workspace_id": workspace_id}
        row.update({k: (str(v) if k.endswith("_id") and v is not None else v) for k, v in fields.items()})
        self.rows[table][str(entity_id)] = row
        return row

    def add_workspace(self, workspace_id: str, name: str) -> None:
        self.workspaces[workspace_id] = name

    def add_profile(self, user_id: str, first_name: str, last_name: str, username: str) -> None:
        self.profiles[user_id] = {
            "first_name": first_name,
            "last_name": last_name,
            "username": username,
        }

    def add_project(self, project_id: Any, workspace_id: str, **fields: Any) -> dict[str, Any]:
        return self._add("projects", project_id, workspace_id, fields)

    def add_ticket(self, ticket_id: Any, workspace_id: str, **fields: Any) -> dict[str, Any]:
        return self._add("tickets", ticket_id, workspace_id, fields)

    def add_epic(self, epic_id: Any, workspace_id: str, **fields: Any) -> dict[str, Any]:
        return self._add("epics", epic_id, workspace_id, fields)

    def add_sprint(self, sprint_id: Any, workspace_id: str, **fields: Any) -> dict[str, Any]:
        return self._add("sprints", sprint_id, workspace_id, fields)

    def add_task(self, task_id: Any, workspace_id: str, **fields: Any) -> dict[str, Any]:
        return self._add("tasks", task_id, workspace_id, fields)

    def add_label(self, label_id: str, name: str, ticket_ids: tuple[str, ...] = ()) -> None:
        self.labels[label_id] = name
        for ticket_id in ticket_ids:
            self.ticket_labels.append((str(ticket_id), label_id))

    def add_ticket_dependency(self, ticket_id: Any, depends_on_ticket_id: Any) -> None:
        self.ticket_dependencies.append((str(ticket_id), str(depends_on_ticket_id)))

    def link_task_ticket(self, task_id: Any, ticket_id: Any) -> None:
        self.task_tickets.append((str(task_id), str(ticket_id)))

    def delete(self, table: str, entity_id: Any) -> None:
        """Remove a row and the join rows that reference it."""
        entity_id = str(entity_id)
        self.rows[table].pop(entity_id, None)
        if table == "tickets":
            self.ticket_dependencies = [
                (a, b) for a, b in self.ticket_dependencies if entity_id not in (a, b)
            ]
            self.ticket_labels = [(t, l) for t, l in self.ticket_labels if t != entity_id]
            self.task_tickets = [(k, t) for k, t in self.task_tickets if t != entity_id]
        elif table == "tasks":
            self.task_tickets = [(k, t) for k, t in self.task_tickets if k != entity_id]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _row(self, table: str, entity_id: str, workspace_id: str) -> Optional[dict[str, Any]]:
        row = self.rows[table].get(str(entity_id))
        if row is None or row["workspace_id"] != workspace_id:
            return None
        return row

    def _profile(self, user_id: Optional[str]) -> Optional[ProfileRecord]:
        if user_id is None or user_id not in self.profiles:
            return None
        return ProfileRecord(id=user_id, **self.profiles[user_id])

    def _project_summary(self, project_id: Optional[str]) -> Optional[ProjectSummary]:
        project = self.rows["projects"].get(project_id) if project_id else None
        if project is None:
            return None
        return ProjectSummary(id=project["id"], name=project["name"], slug=project.get("slug"))

    def _ticket_summary(self, row: dict[str, Any]) -> TicketSummary:
        return TicketSummary(
            id=row["id"],
            ticket_number=row.get("ticket_number"),
            title=row["title"],
            status=row.get("status"),
        )

    def _tickets_where(self, column: str, value: str, workspace_id: str) -> list[dict[str, Any]]:
        return [
            row for row in self.rows["tickets"].values()
            if row.get(column) == value and row["workspace_id"] == workspace_id
        ]

    @staticmethod
    def _fields(row: dict[str, Any], *names: str) -> dict[str, Any]:
        return {name: row.get(name) for name in names}

    # ------------------------------------------------------------------
    # Entity reads
    # ------------------------------------------------------------------

    async def get_project(self, project_id: str, workspace_id: str) -> Optional[ProjectRecord]:
        row = self._row("projects", project_id, workspace_id)
        if row is None:
            return None
        return ProjectRecord(
            id=row["id"],
            workspace_id=workspace_id,
            name=row["name"],
            **self._fields(row, "slug", "description", "full_description", "status", "priority", "stack"),
            manager=self._profile(row.get("project_manager_id")),
            workspace_name=self.workspaces.get(workspace_id),
        )

    async def get_ticket(self, ticket_id: str, workspace_id: str) -> Optional[TicketRecord]:
        row = self._row("tickets", ticket_id, workspace_id)
        if row is None:
            return None

        sprint = self.rows["sprints"].get(row.get("sprint_id") or "")
        epic = self.rows["epics"].get(row.get("epic_id") or "")
        labels = sorted(
            self.labels[label_id]
            for t_id, label_id in self.ticket_labels
            if t_id == row["id"] and label_id in self.labels
        )

        return TicketRecord(
            id=row["id"],
            workspace_id=workspace_id,
            title=row["title"],
            **self._fields(
                row, "project_id", "ticket_number", "description", "status", "priority",
                "category", "story_points", "estimated_hours", "implementation_notes",
                "testing_notes",
            ),
            assignee=self._profile(row.get("assigned_to")),
            sprint=SprintSummary(id=sprint["id"], name=sprint["name"], status=sprint.get("status")) if sprint else None,
            project=self._project_summary(row.get("project_id")),
            epic=EpicSummary(id=epic["id"], title=epic["title"]) if epic else None,
            labels=labels,
        )

    async def get_epic(self, epic_id: str, workspace_id: str) -> Optional[EpicRecord]:
        row = self._row("epics", epic_id, workspace_id)
        if row is None:
            return None
        return EpicRecord(
            id=row["id"],
            workspace_id=workspace_id,
            title=row["title"],
            **self._fields(
                row, "project_id", "description", "status", "priority",
                "story_points", "estimated_hours",
            ),
            assignee=self._profile(row.get("assigned_to")),
            project=self._project_summary(row.get("project_id")),
            tickets=[self._ticket_summary(t) for t in self._tickets_where("epic_id", row["id"], workspace_id)],
        )

    async def get_task(self, task_id: str, workspace_id: str) -> Optional[TaskRecord]:
        row = self._row("tasks", task_id, workspace_id)
        if row is None:
            return None
        tickets = [
            self.rows["tickets"][ticket_id]
            for t_id, ticket_id in self.task_tickets
            if t_id == row["id"] and ticket_id in self.rows["tickets"]
        ]
        return TaskRecord(
            id=row["id"],
            workspace_id=workspace_id,
            title=row["title"],
            **self._fields(
                row, "description", "status", "priority", "estimated_hours", "actual_hours",
            ),
            assignee=self._profile(row.get("assigned_to")),
            tickets=[self._ticket_summary(t) for t in tickets if t["workspace_id"] == workspace_id],
        )

    async def get_sprint(self, sprint_id: str, workspace_id: str) -> Optional[SprintRecord]:
        row = self._row("sprints", sprint_id, workspace_id)
        if row is None:
            return None
        return SprintRecord(
            id=row["id"],
            workspace_id=workspace_id,
            name=row["name"],
            **self._fields(row, "project_id", "description", "status", "start_date", "end_date"),
            project=self._project_summary(row.get("project_id")),
            tickets=[self._ticket_summary(t) for t in self._tickets_where("sprint_id", row["id"], workspace_id)],
        )

    async def list_entity_ids(
        self,
        table: str,
        workspace_id: str,
        project_id: Optional[str] = None,
    ) -> list[str]:
        if table not in self.rows:
            raise ValueError(f"Unsupported table: {table}")
        ids = []
        for row in self.rows[table].values():
            if row["workspace_id"] != workspace_id:
                continue
            if project_id is not None:
                owner = row["id"] if table == "projects" else row.get("project_id", project_id)
                if owner != project_id:
                    continue
            ids.append(row["id"])
        return sorted(ids)

    # ------------------------------------------------------------------
    # Relationship lookups
    # ------------------------------------------------------------------

    def _related_tickets(self, ids: list[str], workspace_id: str) -> list[RelatedRow]:
        related = []
        for ticket_id in ids:
            ticket = self._row("tickets", ticket_id, workspace_id)
            if ticket is not None:
                related.append(RelatedRow(id=ticket_id, project_id=ticket.get("project_id")))
        return related

    async def get_ticket_depends_on(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        ids = [b for a, b in self.ticket_dependencies if a == str(ticket_id)]
        return self._related_tickets(ids, workspace_id)

    async def get_ticket_dependents(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        ids = [a for a, b in self.ticket_dependencies if b == str(ticket_id)]
        return self._related_tickets(ids, workspace_id)

    async def get_ticket_epic(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        ticket = self._row("tickets", ticket_id, workspace_id)
        if ticket is None or not ticket.get("epic_id"):
            return []
        return [RelatedRow(id=ticket["epic_id"], project_id=ticket.get("project_id"))]

    async def get_epic_tickets(self, epic_id: str, workspace_id: str) -> list[RelatedRow]:
        return [
            RelatedRow(id=t["id"], project_id=t.get("project_id"))
            for t in self._tickets_where("epic_id", str(epic_id), workspace_id)
        ]

    async def get_ticket_sprint(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        ticket = self._row("tickets", ticket_id, workspace_id)
        if ticket is None or not ticket.get("sprint_id"):
            return []
        return [RelatedRow(id=ticket["sprint_id"], project_id=ticket.get("project_id"))]

    async def get_sprint_tickets(self, sprint_id: str, workspace_id: str) -> list[RelatedRow]:
        return [
            RelatedRow(id=t["id"], project_id=t.get("project_id"))
            for t in self._tickets_where("sprint_id", str(sprint_id), workspace_id)
        ]

    async def get_task_tickets(self, task_id: str, workspace_id: str) -> list[RelatedRow]:
        ids = [ticket_id for t_id, ticket_id in self.task_tickets if t_id == str(task_id)]
        return self._related_tickets(ids, workspace_id)

    async def get_ticket_tasks(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        ticket = self._row("tickets", ticket_id, workspace_id)
        if ticket is None:
            return []
        return [
            RelatedRow(id=task_id, project_id=ticket.get("project_id"))
            for task_id, t_id in self.task_tickets
            if t_id == str(ticket_id)
        ]

    async def get_entity_project(self, table: str, entity_id: str, workspace_id: str) -> Optional[str]:
        if table not in ("tickets", "epics", "sprints"):
            return None
        row = self._row(table, entity_id, workspace_id)
        return row.get("project_id") if row else None

    async def get_project_members(self, project_id: str, workspace_id: str) -> ProjectMembers:
        def ids(table: str) -> list[str]:
            return [
                row["id"] for row in self.rows[table].values()
                if row.get("project_id") == str(project_id) and row["workspace_id"] == workspace_id
            ]

        return ProjectMembers(tickets=ids("tickets"), epics=ids("epics"), sprints=ids("sprints"))
