"""Text aggregation for vector documents.

Each builder flattens one business record (plus its dependency digest) into
the sentence-like text that gets embedded. Fields are emitted only when
present and joined with ". ".
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Union

from ....repositories.entity_source import (
    EpicRecord,
    ProjectRecord,
    SprintRecord,
    TaskRecord,
    TicketRecord,
    TicketSummary,
)


SEPARATOR = ". "


def _num(value: Any) -> str:
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _date(value: Union[datetime, date]) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


def _join(parts: list[Optional[str]]) -> str:
    return SEPARATOR.join(part for part in parts if part)


def _ticket_list(tickets: list[TicketSummary]) -> Optional[str]:
    if not tickets:
        return None
    items = ", ".join(f"#{_num(t.ticket_number)}: {t.title} ({t.status})" for t in tickets)
    return f"Tickets: {items}"


def _dependencies(context: str) -> Optional[str]:
    return f"Dependencies: {context}" if context else None


def build_project_content(project: ProjectRecord, dependency_context: str = "") -> str:
    return _join([
        f"Project: {project.name} ({project.slug})",
        f"Description: {project.description or 'No description'}",
        f"Full Description: {project.full_description}" if project.full_description else None,
        f"Status: {project.status}, Priority: {project.priority}",
        f"Managed by: {project.manager.display_name}" if project.manager else None,
        f"Technology Stack: {project.stack}" if project.stack else None,
        f"Workspace: {project.workspace_name}" if project.workspace_name else None,
        _dependencies(dependency_context),
    ])


def build_ticket_content(ticket: TicketRecord, dependency_context: str = "") -> str:
    return _join([
        f"Ticket #{_num(ticket.ticket_number)}: {ticket.title}",
        f"Description: {ticket.description or 'No description'}",
        f"Status: {ticket.status}, Priority: {ticket.priority}, Category: {ticket.category}",
        f"Assigned to: {ticket.assignee.display_name}" if ticket.assignee else None,
        f"Sprint: {ticket.sprint.name} ({ticket.sprint.status})" if ticket.sprint else None,
        f"Project: {ticket.project.name} ({ticket.project.slug})" if ticket.project else None,
        f"Epic: {ticket.epic.title}" if ticket.epic else None,
        f"Story Points: {_num(ticket.story_points)}" if ticket.story_points else None,
        f"Estimated Hours: {_num(ticket.estimated_hours)}" if ticket.estimated_hours else None,
        f"Implementation Notes: {ticket.implementation_notes}" if ticket.implementation_notes else None,
        f"Testing Notes: {ticket.testing_notes}" if ticket.testing_notes else None,
        f"Labels: {', '.join(ticket.labels)}" if ticket.labels else None,
        _dependencies(dependency_context),
    ])


def build_epic_content(epic: EpicRecord, dependency_context: str = "") -> str:
    return _join([
        f"Epic: {epic.title}",
        f"Description: {epic.description or 'No description'}",
        f"Status: {epic.status}, Priority: {epic.priority}",
        f"Assigned to: {epic.assignee.display_name}" if epic.assignee else None,
        f"Project: {epic.project.name} ({epic.project.slug})" if epic.project else None,
        f"Story Points: {_num(epic.story_points)}" if epic.story_points else None,
        f"Estimated Hours: {_num(epic.estimated_hours)}" if epic.estimated_hours else None,
        _ticket_list(epic.tickets),
        _dependencies(dependency_context),
    ])


def build_task_content(task: TaskRecord, dependency_context: str = "") -> str:
    linked = (
        "Ticket: " + ", ".join(f"#{_num(t.ticket_number)}: {t.title}" for t in task.tickets)
        if task.tickets else None
    )
    return _join([
        f"Task: {task.title}",
        f"Description: {task.description or 'No description'}",
        f"Status: {task.status}, Priority: {task.priority}",
        f"Assigned to: {task.assignee.display_name}" if task.assignee else None,
        linked,
        f"Estimated Hours: {_num(task.estimated_hours)}" if task.estimated_hours else None,
        f"Actual Hours: {_num(task.actual_hours)}" if task.actual_hours else None,
        _dependencies(dependency_context),
    ])


def build_sprint_content(sprint: SprintRecord, dependency_context: str = "") -> str:
    return _join([
        f"Sprint: {sprint.name}",
        f"Description: {sprint.description or 'No description'}",
        f"Status: {sprint.status}",
        f"Start Date: {_date(sprint.start_date)}" if sprint.start_date else None,
        f"End Date: {_date(sprint.end_date)}" if sprint.end_date else None,
        f"Project: {sprint.project.name} ({sprint.project.slug})" if sprint.project else None,
        _ticket_list(sprint.tickets),
        _dependencies(dependency_context),
    ])
