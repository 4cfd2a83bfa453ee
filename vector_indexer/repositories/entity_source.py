"""Read-only access to the business entities that feed vector documents.

Provides the interface that entity sources must implement: keyed reads of
projects, tickets, epics, tasks and sprints with the joined context the
aggregation step needs, plus the fixed relationship lookups used by the
dependency tracker. Nothing here writes to the business tables.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, Field

Number = Union[int, float]


class ProfileRecord(BaseModel):
    """User profile joined onto assignable entities."""
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''} ({self.username or ''})"


class ProjectSummary(BaseModel):
    id: str
    name: str
    slug: Optional[str] = None


class SprintSummary(BaseModel):
    id: str
    name: str
    status: Optional[str] = None


class EpicSummary(BaseModel):
    id: str
    title: str


class TicketSummary(BaseModel):
    id: str
    ticket_number: Optional[Number] = None
    title: str
    status: Optional[str] = None


class RelatedRow(BaseModel):
    """One side of a relationship lookup: the related id and its project."""
    id: str
    project_id: Optional[str] = None


class ProjectRecord(BaseModel):
    id: str
    workspace_id: str
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    full_description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    stack: Optional[str] = None
    manager: Optional[ProfileRecord] = None
    workspace_name: Optional[str] = None


class TicketRecord(BaseModel):
    id: str
    workspace_id: str
    project_id: Optional[str] = None
    ticket_number: Optional[Number] = None
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    story_points: Optional[Number] = None
    estimated_hours: Optional[Number] = None
    implementation_notes: Optional[str] = None
    testing_notes: Optional[str] = None
    assignee: Optional[ProfileRecord] = None
    sprint: Optional[SprintSummary] = None
    project: Optional[ProjectSummary] = None
    epic: Optional[EpicSummary] = None
    labels: list[str] = Field(default_factory=list)


class EpicRecord(BaseModel):
    id: str
    workspace_id: str
    project_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    story_points: Optional[Number] = None
    estimated_hours: Optional[Number] = None
    assignee: Optional[ProfileRecord] = None
    project: Optional[ProjectSummary] = None
    tickets: list[TicketSummary] = Field(default_factory=list)


class TaskRecord(BaseModel):
    id: str
    workspace_id: str
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    estimated_hours: Optional[Number] = None
    actual_hours: Optional[Number] = None
    assignee: Optional[ProfileRecord] = None
    tickets: list[TicketSummary] = Field(default_factory=list)


class SprintRecord(BaseModel):
    id: str
    workspace_id: str
    project_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[Union[datetime, date]] = None
    end_date: Optional[Union[datetime, date]] = None
    project: Optional[ProjectSummary] = None
    tickets: list[TicketSummary] = Field(default_factory=list)


class ProjectMembers(BaseModel):
    """Entities contained in a project, by table."""
    tickets: list[str] = Field(default_factory=list)
    epics: list[str] = Field(default_factory=list)
    sprints: list[str] = Field(default_factory=list)


class EntitySource(ABC):
    """Abstract read interface over the business tables.

    All lookups are scoped to a workspace; rows from other workspaces are
    never returned.
    """

    # ------------------------------------------------------------------
    # Entity reads (None when the entity does not exist in the workspace)
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_project(self, project_id: str, workspace_id: str) -> Optional[ProjectRecord]:
        pass

    @abstractmethod
    async def get_ticket(self, ticket_id: str, workspace_id: str) -> Optional[TicketRecord]:
        pass

    @abstractmethod
    async def get_epic(self, epic_id: str, workspace_id: str) -> Optional[EpicRecord]:
        pass

    @abstractmethod
    async def get_task(self, task_id: str, workspace_id: str) -> Optional[TaskRecord]:
        pass

    @abstractmethod
    async def get_sprint(self, sprint_id: str, workspace_id: str) -> Optional[SprintRecord]:
        pass

    @abstractmethod
    async def list_entity_ids(
        self,
        table: str,
        workspace_id: str,
        project_id: Optional[str] = None,
    ) -> list[str]:
        """List ids of every row of ``table`` in the workspace (optionally one project)."""
        pass

    # ------------------------------------------------------------------
    # Relationship lookups
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_ticket_depends_on(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        """Tickets that ``ticket_id`` depends on."""
        pass

    @abstractmethod
    async def get_ticket_dependents(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        """Tickets that depend on ``ticket_id``."""
        pass

    @abstractmethod
    async def get_ticket_epic(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        pass

    @abstractmethod
    async def get_epic_tickets(self, epic_id: str, workspace_id: str) -> list[RelatedRow]:
        pass

    @abstractmethod
    async def get_ticket_sprint(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        pass

    @abstractmethod
    async def get_sprint_tickets(self, sprint_id: str, workspace_id: str) -> list[RelatedRow]:
        pass

    @abstractmethod
    async def get_task_tickets(self, task_id: str, workspace_id: str) -> list[RelatedRow]:
        """Tickets linked to a task through task_tickets."""
        pass

    @abstractmethod
    async def get_ticket_tasks(self, ticket_id: str, workspace_id: str) -> list[RelatedRow]:
        """Tasks linked to a ticket; ``project_id`` is the ticket's project."""
        pass

    @abstractmethod
    async def get_entity_project(self, table: str, entity_id: str, workspace_id: str) -> Optional[str]:
        """Project id owning a ticket, epic or sprint."""
        pass

    @abstractmethod
    async def get_project_members(self, project_id: str, workspace_id: str) -> ProjectMembers:
        pass
