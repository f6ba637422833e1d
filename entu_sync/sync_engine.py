"""Permission propagation between persons, groups and tasks.

Students belong to groups through their _parent references; tasks are
assigned to a group through their grupp property. A person must hold
_expander on every task of every group they belong to, so they can add
responses under it.
"""
from typing import Dict, Any, List, Optional

from entu_sync.entu_client import EntuClient, EntityRef
from entu_sync.errors import RemoteError, ReconciliationError, Unauthorized
from entu_sync.logging_conf import logger


def _grant_counts(result) -> Dict[str, int]:
    return {
        "permissions_granted": result.successful,
        "permissions_skipped": result.skipped,
        "permissions_failed": result.failed,
    }


class SyncEngine:
    """Runs one reconciliation pass for an edited person or task."""

    def __init__(self, client: Optional[EntuClient] = None):
        self.client = client or EntuClient()

    def propagate_from_person(self, person_id: str, token: Optional[str]) -> Dict[str, Any]:
        """Grant the person access to all tasks of all their groups."""
        logger.info(f"Processing person webhook for {person_id}")

        try:
            person = self.client.fetch_entity(person_id, token)
            group_ids = list(dict.fromkeys(person.parent_group_ids)) if person.kind == "person" else []

            if not group_ids:
                logger.info(f"Person {person_id} has no group memberships")
                return {
                    "success": True,
                    "message": "Person has no groups assigned",
                    "person_id": person_id,
                    "groups_found": 0,
                    "tasks_found": 0,
                    "permissions_granted": 0,
                }

            logger.info(f"Found {len(group_ids)} groups for person {person_id}: {group_ids}")

            # A task can be assigned to several of the person's groups
            tasks: Dict[str, EntityRef] = {}
            for group_id in group_ids:
                for task in self.client.list_tasks_in_group(group_id, token):
                    tasks.setdefault(task.id, task)
        except (RemoteError, Unauthorized) as e:
            logger.error(f"Failed to load data for person {person_id}: {e.message}")
            raise ReconciliationError(person_id, e) from e

        if not tasks:
            logger.info(f"No tasks found for groups of person {person_id}")
            return {
                "success": True,
                "message": "Person added to groups, but no tasks assigned yet",
                "person_id": person_id,
                "groups_found": len(group_ids),
                "tasks_found": 0,
                "permissions_granted": 0,
            }

        task_ids: List[str] = list(tasks)
        result = self.client.grant_access([person_id], task_ids, token)

        logger.info(
            f"Student access granted: person={person_id} groups={len(group_ids)} tasks={len(task_ids)} "
            f"granted={result.successful} skipped={result.skipped} failed={result.failed}"
        )

        return {
            "success": True,
            "message": "Student access granted successfully",
            "person_id": person_id,
            "groups_found": len(group_ids),
            "tasks_found": len(task_ids),
            **_grant_counts(result),
        }

    def propagate_from_task(self, task_id: str, token: Optional[str]) -> Dict[str, Any]:
        """Grant every member of the task's group access to the task."""
        logger.info(f"Processing task webhook for {task_id}")

        try:
            task = self.client.fetch_entity(task_id, token)
            group_id = task.group_id if task.kind == "task" else None

            if not group_id:
                logger.info(f"Task {task_id} has no group assignment")
                return {
                    "success": True,
                    "message": "Task has no group assigned",
                    "task_id": task_id,
                    "group_found": False,
                    "persons_found": 0,
                    "permissions_granted": 0,
                }

            persons = self.client.list_persons_in_group(group_id, token)
        except (RemoteError, Unauthorized) as e:
            logger.error(f"Failed to load data for task {task_id}: {e.message}")
            raise ReconciliationError(task_id, e) from e

        person_ids = list(dict.fromkeys(p.id for p in persons))

        if not person_ids:
            logger.info(f"No persons found in group {group_id} for task {task_id}")
            return {
                "success": True,
                "message": "Task assigned to group, but no students in group yet",
                "task_id": task_id,
                "group_id": group_id,
                "group_found": True,
                "persons_found": 0,
                "permissions_granted": 0,
            }

        result = self.client.grant_access(person_ids, [task_id], token)

        logger.info(
            f"Task access granted: task={task_id} group={group_id} persons={len(person_ids)} "
            f"granted={result.successful} skipped={result.skipped} failed={result.failed}"
        )

        return {
            "success": True,
            "message": "Task access granted to students successfully",
            "task_id": task_id,
            "group_id": group_id,
            "group_found": True,
            "persons_found": len(person_ids),
            **_grant_counts(result),
        }
