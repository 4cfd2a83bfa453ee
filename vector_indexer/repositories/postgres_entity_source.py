"""PostgreSQL entity source for the business tables.

Reads projects, tickets, epics, tasks and sprints (with profiles, labels and
workspace names joined in) using the shared psycopg pool. All queries are
parameterized and scoped by workspace_id; the source is strictly read-only.
"""

import logging
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
from .pg_client import PostgresClient

logger = logging.getLogger(__name__)

# Tables that carry a project_id column
PROJECT_SCOPED_TABLES = ("tickets", "epics", "sprints")

LISTABLE_TABLES = ("projects", "tickets", "epics", "tasks", "sprints")


def _str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _profile(row: dict[str, Any], prefix: str = "profile_") -> Optional[ProfileRecord]:
    user_id = row.get(f"{prefix}user_id")
    if user_id is None:
        return None
    return ProfileRecord(
        id=str(user_id),
        first_name=row.get(f"{prefix}first_name"),
        last_name=row.get(f"{prefix}last_name"),
        username=row.get(f"{prefix}username"),
    )


def _related(rows: list[dict[str, Any]], id_column: str) -> list[RelatedRow]:
    return [
        RelatedRow(id=str(row[id_column]), project_id=_str(row.get("project_id")))
        for row in rows
        if row.get(id_column) is not None
    ]


_PROFILE_COLUMNS = """
    p.user_id AS profile_user_id,
    p.first_name AS profile_first_name,
    p.last_name AS profile_last_name,
    p.username AS profile_username
"""


class PostgresEntitySource(EntitySource):
    """Entity source reading the business schema directly.

    Example:
        >>> source = PostgresEntitySource(PostgresClient(dsn))
        >>> ticket = await source.get_ticket("42", "w1")
    """

    def __init__(self, client: PostgresClient) -> None:
        self.client = client

    # ------------------------------------------------------------------
    # Entity reads
    # ------------------------------------------------------------------

    async def get_project(self, project_id: str, workspace_id: str) -> Optional[ProjectRecord]:
        row = await self.client.fetch_one(
            f"""
            SELECT pr.id, pr.workspace_id, pr.name, pr.slug, pr.description,
                   pr.full_description, pr.status, pr.priority, pr.stack,
                   w.name AS workspace_name,
                   {_PROFILE_COLUMNS}
            FROM projects pr
            LEFT JOIN profiles p ON p.user_id = pr.project_manager_id
            LEFT JOIN workspaces w ON w.id = pr.workspace_id
            WHERE pr.id = %s AND pr.workspace_id = %s
            """,
            (project_id, workspace_id),
        )
        if not row:
            return None

        return ProjectRecord(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            name=row["name"],
            slug=row.get("slug"),
            description=row.get("description"),
            full_description=row.get("full_description"),
            status=_str(row.get("status")),
            priority=_str(row.get("priority")),
            stack=_str(row.get("stack")),
            manager=_profile(row),
            workspace_name=row.get("workspace_name"),
        )

    async def get_ticket(self, ticket_id: str, workspace_id: str) -> Optional[TicketRecord]:
        row = await self.client.fetch_one(
            f"""
            SELECT t.id, t.workspace_id, t.project_id, t.ticket_number, t.title,
                   t.description, t.status, t.priority, t.category, t.story_points,
                   t.estimated_hours, t.implementation_notes, t.testing_notes,
                   s.id AS sprint_id, s.name AS sprint_name, s.status AS sprint_status,
                   pr.name AS project_name, pr.slug AS project_slug,
                   e.id AS epic_id, e.title AS epic_title,
                   {_PROFILE_COLUMNS}
            FROM tickets t
            LEFT JOIN profiles p ON p.user_id = t.assigned_to
            LEFT JOIN sprints s ON s.id = t.sprint_id
            LEFT JOIN projects pr ON pr.id = t.project_id
            LEFT JOIN epics e ON e.id = t.epic_id
            WHERE t.id = %s AND t.workspace_id = %s
            """,
            (ticket_id, workspace_id),
        )
        if not row:
            return None

        labels = await self.client.fetch_all(
            """
            SELECT l.name
            FROM ticket_labels tl
            JOIN labels l ON l.id = tl.label_id
            WHERE tl.ticket_id = %s
            ORDER BY l.name
            """,
            (ticket_id,),
        )

        return TicketRecord(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            project_id=_str(row.get("project_id")),
            ticket_number=row.get("ticket_number"),
            title=row["title"],
            description=row.get("description"),
            status=_str(row.get("status")),
            priority=_str(row.get("priority")),
            category=_str(row.get("category")),
            story_points=row.get("story_points"),
            estimated_hours=row.get("estimated_hours"),
            implementation_notes=row.get("implementation_notes"),
            testing_notes=row.get("testing_notes"),
            assignee=_profile(row),
            sprint=(
                SprintSummary(id=str(row["sprint_id"]), name=row["sprint_name"], status=_str(row.get("sprint_status")))
                if row.get("sprint_id") is not None else None
            ),
            project=(
                ProjectSummary(id=str(row["project_id"]), name=row["project_name"], slug=row.get("project_slug"))
                if row.get("project_name") is not None else None
            ),
            epic=(
                EpicSummary(id=str(row["epic_id"]), title=row["epic_title"])
                if row.get("epic_id") is not None else None
            ),
            labels=[label["name"] for label in labels],
        )

    async def _ticket_summaries(self, column: str, value: str, workspace_id: str) -> list[TicketSummary]:
        rows = await self.client.fetch_all(
            f"""
            SELECT id, ticket_number, title, status
            FROM tickets
            WHERE {column} = %s AND workspace_id = %s
            ORDER BY ticket_number
            """,
            (value, workspace_id),
        )
        return [
            TicketSummary(
                id=str(row["id"]),
                ticket_number=row.get("ticket_number"),
                title=row["title"],
                status=_str(row.get("status")),
            )
            for row in rows
        ]

    async def get_epic(self, epic_id: str, workspace_id: str) -> Optional[EpicRecord]:
        row = await self.client.fetch_one(
            f"""
            SELECT e.id, e.workspace_id, e.project_id, e.title, e.description,
                   e.status, e.priority, e.story_points, e.estimated_hours,
                   pr.name AS project_name, pr.slug AS project_slug,
                   {_PROFILE_COLUMNS}
            FROM epics e
            LEFT JOIN profiles p ON p.user_id = e.assigned_to
            LEFT JOIN projects pr ON pr.id = e.project_id
            WHERE e.id = %s AND e.workspace_id = %s
            """,
            (epic_id, workspace_id),
        )
        if not row:
            return None

        return EpicRecord(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            project_id=_str(row.get("project_id")),
            title=row["title"],
            description=row.get("description"),
            status=_str(row.get("status")),
            priority=_str(row.get("priority")),
            story_points=row.get("story_points"),
            estimated_hours=row.get("estimated_hours"),
            assignee=_profile(row),
            project=(
                ProjectSummary(id=str(row["project_id"]), name=row["project_name"], slug=row.get("project_slug"))
                if row.get("project_name") is not None else None
            ),
            tickets=await self._ticket_summaries("epic_id", epic_id, workspace_id),
        )

    async def get_task(self, task_id: str, workspace_id: str) -> Optional[TaskRecord]:
        row = await self.client.fetch_one(
            f"""
            SELECT tk.id, tk.workspace_id, tk.title, tk.description, tk.status,
                   tk.priority, tk.estimated_hours, tk.actual_hours,
                   {_PROFILE_COLUMNS}
            FROM tasks tk
            LEFT JOIN profiles p ON p.user_id = tk.assigned_to
            WHERE tk.id = %s AND tk.workspace_id = %s
            """,
            (task_id, workspace_id),
        )
        if not row:
            return None

        ticket_rows = await self.client.fetch_all(
            """
            SELECT t.id, t.ticket_number, t.title, t.status
            FROM task_tickets tt
            JOIN tickets t ON t.id = tt.ticket_id
            WHERE tt.task_id = %s AND t.workspace_id = %s
            ORDER BY t.ticket_number
            """,
            (task_id, workspace_id),
        )

        return TaskRecord(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            title=row["title"],
            description=row.get("description"),
            status=_str(row.get("status")),
            priority=_str(row.get("priority")),
            estimated_hours=row.get("estimated_hours"),
            actual_hours=row.get("actual_hours"),
            assignee=_profile(row),
            tickets=[
                TicketSummary(
                    id=str(t["id"]),
                    ticket_number=t.get("ticket_number"),
                    title=t["title"],
                    status=_str(t.get("status")),
                )
                for t in ticket_rows
            ],
        )

    async def get_sprint(self, sprint_id: str, workspace_id: str) -> Optional[SprintRecord]:
        row = await self.client.fetch_one(
            """
            SELECT s.id, s.workspace_id, s.project_id, s.name, s.description,
                   s.status, s.start_date, s.end_date,
                   pr.name AS project_name, pr.slug AS project_slug
            FROM sprints s
            LEFT JOIN projects pr ON pr.id = s.project_id
            WHERE s.id = %s AND s.workspace_id = %s
            """,
            (sprint_id, workspace_id),
        )
        if not row:
            return None

        return SprintRecord(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            project_id=_str(row.get("project_id")),
            name=row["name"],
            description=row.get("description"),
            status=_str(row.get("status")),
            start_date=row.get("start_date"),
            end_date=row.get("end_date"),
            project=(
                ProjectSummary(id=str(row["project_id"]), name=row["project_name"], slug=row.get("project_slug"))
                if row.get("project_name") is not None else None
            ),
            tickets=await self._ticket_summaries("sprint_id", sprint_id, workspace_id),
        )

    async def list_entity_ids(
        self,
        table: str,
        workspace_id: str,
        project_id: Optional[str] = None,
    ) -> list[str]:
        if table not in LISTABLE_TABLES:
            raise ValueError(f"Unsupported table: {table}")

        query = f'SELECT id FROM "{table}" WHERE workspace_id = %s'
        params: list[Any] = [workspace_id]
        if project_id is not None:
            if table == "projects":
                query += " AND id = %s"
                params.append(project_id)
            elif table in PROJECT_SCOPED_TABLES:
                query += " AND project_id = %s"
                params.append(project_id)
        query += " ORDER BY id"

        rows = await self.client.fetch_all(query, params)
        return [str(row["id"]) for row in rows]

    # ------------------------------------------------------------------
    # Relationship lookups
    # ------------------------------------------------------------------

    async def get_ticket_depends_on(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            """
            SELECT td.depends_on_ticket_id, t.project_id
            FROM ticket_dependencies td
            JOIN tickets t ON t.id = td.depends_on_ticket_id
            WHERE td.ticket_id = %s AND t.workspace_id = %s
            """,
            (ticket_id, workspace_id),
        )
        return _related(rows, "depends_on_ticket_id")

    async def get_ticket_dependents(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            """
            SELECT td.ticket_id, t.project_id
            FROM ticket_dependencies td
            JOIN tickets t ON t.id = td.ticket_id
            WHERE td.depends_on_ticket_id = %s AND t.workspace_id = %s
            """,
            (ticket_id, workspace_id),
        )
        return _related(rows, "ticket_id")

    async def get_ticket_epic(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            """
            SELECT epic_id, project_id
            FROM tickets
            WHERE id = %s AND epic_id IS NOT NULL AND workspace_id = %s
            """,
            (ticket_id, workspace_id),
        )
        return _related(rows, "epic_id")

    async def get_epic_tickets(self, epic_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            "SELECT id, project_id FROM tickets WHERE epic_id = %s AND workspace_id = %s",
            (epic_id, workspace_id),
        )
        return _related(rows, "id")

    async def get_ticket_sprint(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            """
            SELECT sprint_id, project_id
            FROM tickets
            WHERE id = %s AND sprint_id IS NOT NULL AND workspace_id = %s
            """,
            (ticket_id, workspace_id),
        )
        return _related(rows, "sprint_id")

    async def get_sprint_tickets(self, sprint_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            "SELECT id, project_id FROM tickets WHERE sprint_id = %s AND workspace_id = %s",
            (sprint_id, workspace_id),
        )
        return _related(rows, "id")

    async def get_task_tickets(self, task_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            """
            SELECT tt.ticket_id, t.project_id
            FROM task_tickets tt
            JOIN tickets t ON t.id = tt.ticket_id
            WHERE tt.task_id = %s AND t.workspace_id = %s
            """,
            (task_id, workspace_id),
        )
        return _related(rows, "ticket_id")

    async def get_ticket_tasks(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        rows = await self.client.fetch_all(
            """
            SELECT tt.task_id, t.project_id
            FROM task_tickets tt
            JOIN tickets t ON t.id = tt.ticket_id
            WHERE tt.ticket_id = %s AND t.workspace_id = %s
            """,
            (ticket_id, workspace_id),
        )
        return _related(rows, "task_id")

    async def get_entity_project(self, table: str, entity_id: str, workspace_id: str) -> Optional[str]:
        if table not in PROJECT_SCOPED_TABLES:
            return None
        row = await self.client.fetch_one(
            f'SELECT project_id FROM "{table}" WHERE id = %s AND workspace_id = %s',
            (entity_id, workspace_id),
        )
        return _str(row.get("project_id")) if row else None

    async def get_project_members(self, project_id: str, workspace_id: str) -> ProjectMembers:
        members = ProjectMembers()
        for table in PROJECT_SCOPED_TABLES:
            rows = await self.client.fetch_all(
                f'SELECT id FROM "{table}" WHERE project_id = %s AND workspace_id = %s',
                (project_id, workspace_id),
            )
            setattr(members, table, [str(row["id"]) for row in rows])

        logger.debug(
            "project_members_loaded",
            extra={
                "project_id": project_id,
                "tickets": len(members.tickets),
                "epics": len(members.epics),
                "sprints": len(members.sprints),
            }
        )
        return members
