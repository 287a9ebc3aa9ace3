"""Task and event-mapping persistence."""

from tasksync.storage.mappings import MappingStore, ensure_mappings_schema
from tasksync.storage.tasks import TaskStore, ensure_tasks_schema

__all__ = ["MappingStore", "TaskStore", "ensure_mappings_schema", "ensure_tasks_schema"]
