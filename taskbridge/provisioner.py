import logging
from typing import Dict, Iterable, Optional, Set

from taskbridge.command_queue import COMMAND_TYPE_KEY, CommandQueue
from taskbridge.models import BatchResult
from taskbridge.todoist_client import TodoistClient

logger = logging.getLogger("Provisioner")


class StructuralProvisioner:
    """
    Get-or-create for Todoist labels and sections.

    Missing objects are not created through a separate call: a create command is
    queued on the shared queue so tasks in the same batch can reference the
    temporary id. Call `resolve()` after every flush so later contexts see the
    real ids.
    """

    def __init__(self, client: TodoistClient, queue: CommandQueue):
        self.client = client
        self.queue = queue
        self._labels: Optional[Dict[str, str]] = None
        self._sections: Dict[str, Dict[str, str]] = {}
        # temp ids queued since the last resolve()
        self._pending: Set[str] = set()

    def _create(self, correlation_key: str, args: Dict[str, str]) -> str:
        temp_id = self.queue.create(correlation_key, args)
        self._pending.add(temp_id)
        return temp_id

    async def ensure_labels(self, names: Iterable[str]) -> Dict[str, str]:
        names = list(names)
        if self._labels is None:
            self._labels = {label["name"]: str(label["id"]) for label in await self.client.list_labels()}

        for name in names:
            if name not in self._labels:
                logger.info(f"Creating label {name}")
                self._labels[name] = self._create(f"label/{name}", {COMMAND_TYPE_KEY: "label_add", "name": name})
        return {name: self._labels[name] for name in names}

    async def ensure_sections(self, project_id: str, names: Iterable[str]) -> Dict[str, str]:
        names = list(names)
        project_id = str(project_id)
        if project_id not in self._sections:
            sections = await self.client.list_sections(project_id)
            self._sections[project_id] = {section["name"]: str(section["id"]) for section in sections}

        known = self._sections[project_id]
        for name in names:
            if name not in known:
                logger.info(f"Creating section {name} in project {project_id}")
                known[name] = self._create(
                    f"section/{project_id}/{name}",
                    {COMMAND_TYPE_KEY: "section_add", "name": name, "project_id": project_id},
                )
        return {name: known[name] for name in names}

    def resolve(self, result: BatchResult):
        """
        Swap temporary ids for real ones. Objects whose create failed or was
        never sent are forgotten and queued again on next use.
        """
        caches = list(self._sections.values())
        if self._labels is not None:
            caches.append(self._labels)

        for cache in caches:
            for name, object_id in list(cache.items()):
                if object_id not in self._pending:
                    continue
                real_id = result.real_id(object_id)
                if real_id:
                    cache[name] = real_id
                else:
                    del cache[name]
        self._pending.clear()
