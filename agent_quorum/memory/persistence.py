"""
Persistence collaborators for agents, tasks and results.

Every call is fallible I/O: backends raise PersistenceUnavailable and never
return partial writes.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..models.core import Agent, AgentStatus, AgentType, Result, Task, TaskStatus
from ..models.errors import PersistenceUnavailable
from ..utils.logging import get_logger

logger = get_logger(__name__)


class PersistenceBackend(ABC):
    """Create/read/update storage for Agent, Task and Result records."""

    async def initialize(self) -> None:
        """Prepare the backend; no-op by default."""

    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        pass

    @abstractmethod
    async def load_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def list_agents(self, agent_type: Optional[AgentType] = None,
                          active_only: bool = False) -> List[Agent]:
        pass

    @abstractmethod
    async def save_task(self, task: Task) -> None:
        pass

    @abstractmethod
    async def load_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        pass

    @abstractmethod
    async def save_result(self, task_id: str, result: Result) -> None:
        pass

    @abstractmethod
    async def load_result(self, task_id: str) -> Optional[Result]:
        pass


def _matches(agent: Agent, agent_type: Optional[AgentType], active_only: bool) -> bool:
    if agent_type is not None and agent.agent_type != agent_type:
        return False
    if active_only and agent.status != AgentStatus.ACTIVE:
        return False
    return True


class InMemoryPersistence(PersistenceBackend):
    """
    Process-local backend.

    Records are stored as JSON-mode dumps so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self._agents: Dict[str, Dict[str, Any]] = {}
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._results: Dict[str, Dict[str, Any]] = {}

    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.agent_id] = agent.model_dump(mode='json')

    async def load_agent(self, agent_id: str) -> Optional[Agent]:
        data = self._agents.get(agent_id)
        return Agent.model_validate(data) if data is not None else None

    async def list_agents(self, agent_type: Optional[AgentType] = None,
                          active_only: bool = False) -> List[Agent]:
        agents = [Agent.model_validate(data) for data in self._agents.values()]
        return [a for a in agents if _matches(a, agent_type, active_only)]

    async def save_task(self, task: Task) -> None:
        self._tasks[task.task_id] = task.model_dump(mode='json')

    async def load_task(self, task_id: str) -> Optional[Task]:
        data = self._tasks.get(task_id)
        return Task.model_validate(data) if data is not None else None

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        tasks = [Task.model_validate(data) for data in self._tasks.values()]
        return [t for t in tasks if status is None or t.status == status]

    async def save_result(self, task_id: str, result: Result) -> None:
        self._results[task_id] = result.model_dump(mode='json')

    async def load_result(self, task_id: str) -> Optional[Result]:
        data = self._results.get(task_id)
        return Result.model_validate(data) if data is not None else None


class JsonFilePersistence(PersistenceBackend):
    """
    File-based backend writing one JSON document per record.

    Layout under ``storage_path``: ``agents/``, ``tasks/`` and ``results/``.
    Writes go to a temporary file that is atomically renamed into place.
    """

    def __init__(self, storage_path: Optional[str] = None):
        """
        Args:
            storage_path: Root directory. Defaults to ./data/quorum
        """
        self.storage_path = Path(storage_path or "./data/quorum")
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        try:
            for kind in ("agents", "tasks", "results"):
                (self.storage_path / kind).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceUnavailable(f"Cannot create storage at {self.storage_path}: {e}") from e
        logger.info(f"Initialized JSON persistence at {self.storage_path}")

    def _path(self, kind: str, key: str) -> Path:
        return self.storage_path / kind / f"{key}.json"

    async def _write(self, kind: str, key: str, data: Dict[str, Any]) -> None:
        target = self._path(kind, key)
        data['_metadata'] = {'saved_at': datetime.now().isoformat(), 'version': '1.0'}
        try:
            async with self._lock:
                target.parent.mkdir(parents=True, exist_ok=True)
                temp_file = target.with_suffix('.tmp')
                async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                    await f.write(json.dumps(data, indent=2, ensure_ascii=False))
                temp_file.replace(target)
        except OSError as e:
            logger.error(f"Error writing {kind}/{key}: {e}")
            raise PersistenceUnavailable(f"Failed to write {kind}/{key}: {e}", key=key) from e
        logger.debug(f"Saved {kind}/{key}")

    async def _read(self, path: Path) -> Dict[str, Any]:
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
            data = json.loads(content)
        except (OSError, ValueError) as e:
            logger.error(f"Error reading {path}: {e}")
            raise PersistenceUnavailable(f"Failed to read {path.name}: {e}") from e
        data.pop('_metadata', None)
        return data

    async def _read_key(self, kind: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(kind, key)
        if not path.exists():
            return None
        return await self._read(path)

    async def _read_all(self, kind: str) -> List[Dict[str, Any]]:
        directory = self.storage_path / kind
        if not directory.exists():
            return []
        return [await self._read(path) for path in sorted(directory.glob("*.json"))]

    async def save_agent(self, agent: Agent) -> None:
        await self._write("agents", agent.agent_id, agent.model_dump(mode='json'))

    async def load_agent(self, agent_id: str) -> Optional[Agent]:
        data = await self._read_key("agents", agent_id)
        return Agent.model_validate(data) if data is not None else None

    async def list_agents(self, agent_type: Optional[AgentType] = None,
                          active_only: bool = False) -> List[Agent]:
        agents = [Agent.model_validate(data) for data in await self._read_all("agents")]
        return [a for a in agents if _matches(a, agent_type, active_only)]

    async def save_task(self, task: Task) -> None:
        await self._write("tasks", task.task_id, task.model_dump(mode='json'))

    async def load_task(self, task_id: str) -> Optional[Task]:
        data = await self._read_key("tasks", task_id)
        return Task.model_validate(data) if data is not None else None

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        tasks = [Task.model_validate(data) for data in await self._read_all("tasks")]
        return [t for t in tasks if status is None or t.status == status]

    async def save_result(self, task_id: str, result: Result) -> None:
        await self._write("results", task_id, result.model_dump(mode='json'))

    async def load_result(self, task_id: str) -> Optional[Result]:
        data = await self._read_key("results", task_id)
        return Result.model_validate(data) if data is not None else None
