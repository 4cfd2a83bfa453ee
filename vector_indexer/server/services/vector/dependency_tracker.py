"""Dependency tracker for dependency-aware re-indexing.

Derives relations between business entities on demand with a fixed set of
table-specific lookups (not a generic graph walk):

- tickets <-> tickets via ticket_dependencies (``depends_on``, both directions)
- tickets <-> epics (``epic_ticket``) and tickets <-> sprints (``sprint_ticket``)
- tasks <-> tickets via task_tickets (``parent_child``)
- tickets/epics/sprints -> projects, projects -> contained entities (``parent_child``)

Affected-entity expansion is one hop: dependents of dependents are not
revisited for the same triggering event.
"""

import logging
from collections import OrderedDict

from ....repositories.entity_source import EntitySource
from .models import AffectedEntity, DependencyRelation, EntityDependencies, RelationType

logger = logging.getLogger(__name__)


class DependencyTracker:
    """Finds what must be re-embedded when an entity changes.

    Example:
        >>> tracker = DependencyTracker(entity_source)
        >>> affected = await tracker.get_affected_entities("tickets", "42", "w1")
    """

    # Dependencies whose own document lists the changed entity
    CASCADING_DEPENDENCY_TYPES = (
        RelationType.DEPENDS_ON,
        RelationType.EPIC_TICKET,
        RelationType.SPRINT_TICKET,
    )

    def __init__(self, entity_source: EntitySource) -> None:
        self.entity_source = entity_source

    async def get_entity_dependencies(
        self,
        entity_table: str,
        entity_id: str,
        workspace_id: str,
    ) -> EntityDependencies:
        """Collect direct dependencies and dependents of one entity.

        Args:
            entity_table: Business table (tickets, epics, sprints, tasks, projects)
            entity_id: Entity primary key
            workspace_id: Tenant scope

        Returns:
            EntityDependencies; both lists are empty for unknown tables
        """
        logger.debug(
            "getting_entity_dependencies",
            extra={"entity_table": entity_table, "entity_id": entity_id, "workspace_id": workspace_id},
        )

        result = EntityDependencies(entity_table=entity_table, entity_id=entity_id)

        try:
            if entity_table == "tickets":
                await self._ticket_dependencies(entity_id, workspace_id, result)
            if entity_table in ("tickets", "epics"):
                await self._epic_ticket_relations(entity_table, entity_id, workspace_id, result)
            if entity_table in ("tickets", "sprints"):
                await self._sprint_ticket_relations(entity_table, entity_id, workspace_id, result)
            if entity_table in ("tickets", "tasks"):
                await self._task_ticket_relations(entity_table, entity_id, workspace_id, result)
            if entity_table in ("projects", "tickets", "epics", "sprints"):
                await self._project_relations(entity_table, entity_id, workspace_id, result)
        except Exception as e:
            logger.error(
                "get_entity_dependencies_failed",
                extra={
                    "entity_table": entity_table,
                    "entity_id": entity_id,
                    "workspace_id": workspace_id,
                    "error": str(e),
                },
            )
            raise

        return result

    async def _ticket_dependencies(self, ticket_id: str, workspace_id: str, result: EntityDependencies) -> None:
        for row in await self.entity_source.get_ticket_depends_on(ticket_id, workspace_id):
            result.dependencies.append(DependencyRelation(
                source_table="tickets",
                source_id=ticket_id,
                related_table="tickets",
                related_id=row.id,
                relation_type=RelationType.DEPENDS_ON,
                workspace_id=workspace_id,
                project_id=row.project_id,
            ))

        for row in await self.entity_source.get_ticket_dependents(ticket_id, workspace_id):
            result.dependents.append(DependencyRelation(
                source_table="tickets",
                source_id=row.id,
                related_table="tickets",
                related_id=ticket_id,
                relation_type=RelationType.DEPENDS_ON,
                workspace_id=workspace_id,
                project_id=row.project_id,
            ))

    async def _epic_ticket_relations(
        self, entity_table: str, entity_id: str, workspace_id: str, result: EntityDependencies
    ) -> None:
        if entity_table == "tickets":
            for row in await self.entity_source.get_ticket_epic(entity_id, workspace_id):
                result.dependencies.append(DependencyRelation(
                    source_table="tickets",
                    source_id=entity_id,
                    related_table="epics",
                    related_id=row.id,
                    relation_type=RelationType.EPIC_TICKET,
                    workspace_id=workspace_id,
                    project_id=row.project_id,
                ))
        else:
            for row in await self.entity_source.get_epic_tickets(entity_id, workspace_id):
                result.dependents.append(DependencyRelation(
                    source_table="tickets",
                    source_id=row.id,
                    related_table="epics",
                    related_id=entity_id,
                    relation_type=RelationType.EPIC_TICKET,
                    workspace_id=workspace_id,
                    project_id=row.project_id,
                ))

    async def _sprint_ticket_relations(
        self, entity_table: str, entity_id: str, workspace_id: str, result: EntityDependencies
    ) -> None:
        if entity_table == "tickets":
            for row in await self.entity_source.get_ticket_sprint(entity_id, workspace_id):
                result.dependencies.append(DependencyRelation(
                    source_table="tickets",
                    source_id=entity_id,
                    related_table="sprints",
                    related_id=row.id,
                    relation_type=RelationType.SPRINT_TICKET,
                    workspace_id=workspace_id,
                    project_id=row.project_id,
                ))
        else:
            for row in await self.entity_source.get_sprint_tickets(entity_id, workspace_id):
                result.dependents.append(DependencyRelation(
                    source_table="tickets",
                    source_id=row.id,
                    related_table="sprints",
                    related_id=entity_id,
                    relation_type=RelationType.SPRINT_TICKET,
                    workspace_id=workspace_id,
                    project_id=row.project_id,
                ))

    async def _task_ticket_relations(
        self, entity_table: str, entity_id: str, workspace_id: str, result: EntityDependencies
    ) -> None:
        if entity_table == "tasks":
            for row in await self.entity_source.get_task_tickets(entity_id, workspace_id):
                result.dependencies.append(DependencyRelation(
                    source_table="tasks",
                    source_id=entity_id,
                    related_table="tickets",
                    related_id=row.id,
                    relation_type=RelationType.PARENT_CHILD,
                    workspace_id=workspace_id,
                    project_id=row.project_id,
                ))
        else:
            for row in await self.entity_source.get_ticket_tasks(entity_id, workspace_id):
                result.dependents.append(DependencyRelation(
                    source_table="tasks",
                    source_id=row.id,
                    related_table="tickets",
                    related_id=entity_id,
                    relation_type=RelationType.PARENT_CHILD,
                    workspace_id=workspace_id,
                    project_id=row.project_id,
                ))

    async def _project_relations(
        self, entity_table: str, entity_id: str, workspace_id: str, result: EntityDependencies
    ) -> None:
        if entity_table != "projects":
            project_id = await self.entity_source.get_entity_project(entity_table, entity_id, workspace_id)
            if project_id:
                result.dependencies.append(DependencyRelation(
                    source_table=entity_table,
                    source_id=entity_id,
                    related_table="projects",
                    related_id=project_id,
                    relation_type=RelationType.PARENT_CHILD,
                    workspace_id=workspace_id,
                    project_id=project_id,
                ))
            return

        members = await self.entity_source.get_project_members(entity_id, workspace_id)
        for table, ids in (("tickets", members.tickets), ("epics", members.epics), ("sprints", members.sprints)):
            for member_id in ids:
                result.dependents.append(DependencyRelation(
                    source_table=table,
                    source_id=member_id,
                    related_table="projects",
                    related_id=entity_id,
                    relation_type=RelationType.PARENT_CHILD,
                    workspace_id=workspace_id,
                    project_id=entity_id,
                ))

    async def get_affected_entities(
        self,
        entity_table: str,
        entity_id: str,
        workspace_id: str,
    ) -> list[AffectedEntity]:
        """Entities to re-process when ``entity_table/entity_id`` changes.

        The entity itself, every dependent, and every dependency whose
        document references it (``depends_on`` tickets, the ticket's epic
        and sprint), de-duplicated by (table, id) keeping first occurrence.
        """
        deps = await self.get_entity_dependencies(entity_table, entity_id, workspace_id)
        affected = self.affected_from(deps)
        logger.debug(
            "affected_entities_found",
            extra={
                "entity_table": entity_table,
                "entity_id": entity_id,
                "affected_count": len(affected),
            },
        )
        return affected

    def affected_from(self, deps: EntityDependencies) -> list[AffectedEntity]:
        """Affected set for already loaded relations; the entity itself comes first."""
        own_project = next(
            (d.related_id for d in deps.dependencies if d.related_table == "projects"),
            None,
        )
        if deps.entity_table == "projects":
            own_project = deps.entity_id

        candidates = [AffectedEntity(table=deps.entity_table, id=deps.entity_id, project_id=own_project)]
        candidates.extend(
            AffectedEntity(table=d.source_table, id=d.source_id, project_id=d.project_id)
            for d in deps.dependents
        )
        candidates.extend(
            AffectedEntity(table=d.related_table, id=d.related_id, project_id=d.project_id)
            for d in deps.dependencies
            if d.relation_type in self.CASCADING_DEPENDENCY_TYPES
        )

        unique: "OrderedDict[tuple[str, str], AffectedEntity]" = OrderedDict()
        for entity in candidates:
            unique.setdefault((entity.table, entity.id), entity)
        return list(unique.values())

    async def should_include_dependencies(
        self,
        entity_table: str,
        entity_id: str,
        workspace_id: str,
    ) -> bool:
        """True when the entity has any relation worth mentioning in its document."""
        deps = await self.get_entity_dependencies(entity_table, entity_id, workspace_id)
        return bool(deps.dependencies or deps.dependents)

    async def get_dependency_context(
        self,
        entity_table: str,
        entity_id: str,
        workspace_id: str,
    ) -> str:
        """Short digest of relations for the aggregated document text.

        Example output: ``"depends on: 7. epic ticket: E1. depends on by: 9"``
        """
        deps = await self.get_entity_dependencies(entity_table, entity_id, workspace_id)
        return self.format_context(deps)

    @staticmethod
    def format_context(deps: EntityDependencies) -> str:
        parts: list[str] = []

        by_type: "OrderedDict[str, list[str]]" = OrderedDict()
        for dep in deps.dependencies:
            by_type.setdefault(dep.relation_type.value, []).append(dep.related_id)
        for relation, ids in by_type.items():
            parts.append(f"{relation.replace('_', ' ', 1)}: {', '.join(ids)}")

        by_type = OrderedDict()
        for dep in deps.dependents:
            by_type.setdefault(dep.relation_type.value, []).append(dep.source_id)
        for relation, ids in by_type.items():
            parts.append(f"{relation.replace('_', ' ', 1)} by: {', '.join(ids)}")

        return ". ".join(parts)
