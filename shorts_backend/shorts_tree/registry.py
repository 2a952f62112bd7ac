"""In-memory registry of tree executions, keyed by execution id."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .errors import ExecutionNotFoundError, StateTransitionError
from .executor import ExecutionContext, get_results, load_tree, run_tree
from .media import collect_scenes, compose_video
from .models import Scene
from .providers import Providers, default_providers
from .storage import ArtifactStore, store as default_store

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRecord:
    context: ExecutionContext
    task: Optional["asyncio.Task[Any]"] = None
    created_at: float = field(default_factory=time.time)

    @property
    def execution_id(self) -> str:
        return self.context.graph.execution_id

    @property
    def done(self) -> bool:
        # Nodes below a failed node stay pending; the run is done once every
        # reachable branch has settled
        return self.context.finished


class ExecutionRegistry:
    def __init__(self, store: Optional[ArtifactStore] = None):
        self.store = store or default_store
        self._records: Dict[str, ExecutionRecord] = {}
        # Tasks of discarded runs that have not settled yet
        self._detached: Set["asyncio.Task[Any]"] = set()

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, execution_id: str) -> ExecutionRecord:
        record = self._records.get(execution_id)
        if record is None:
            raise ExecutionNotFoundError(execution_id)
        return record

    def submit(self, initial_input: str, template: Any, providers: Optional[Providers] = None) -> str:
        """Validate the template, start the run in the background and return its id.

        Template errors raise ValidationError here, before any provider call.
        """
        graph = load_tree(template, initial_input)
        ctx = ExecutionContext(graph=graph, providers=providers or default_providers(), store=self.store)
        record = ExecutionRecord(context=ctx)
        self._records[graph.execution_id] = record
        record.task = asyncio.create_task(run_tree(ctx))
        record.task.add_done_callback(self._log_outcome)
        logger.info(f"Submitted execution {graph.execution_id}")
        return graph.execution_id

    @staticmethod
    def _log_outcome(task: "asyncio.Task[Any]"):
        if task.cancelled():
            logger.warning("Execution task was cancelled")
        elif task.exception() is not None:
            logger.error(f"Execution task raised: {task.exception()}")

    async def wait(self, execution_id: str) -> Dict[str, Any]:
        record = self.get(execution_id)
        if record.task is not None:
            await record.task
        return get_results(record.context.graph)

    def poll(self, execution_id: str) -> Dict[str, Any]:
        record = self.get(execution_id)
        done = record.done
        return {
            "execution_id": execution_id,
            "status": "completed" if done else "running",
            "done": done,
            "results": get_results(record.context.graph),
        }

    def scenes(self, execution_id: str) -> List[Scene]:
        return collect_scenes(self.get(execution_id).context.graph.nodes)

    async def compose(self, execution_id: str, scenes: Optional[List[Scene]] = None) -> str:
        record = self.get(execution_id)
        if not record.done:
            raise StateTransitionError(f"Execution {execution_id} is still running")
        if scenes is None:
            scenes = self.scenes(execution_id)
        return await compose_video(scenes, execution_id, self.store.videos_dir)

    def discard(self, execution_id: str) -> None:
        record = self._records.pop(execution_id, None)
        if record is None:
            raise ExecutionNotFoundError(execution_id)
        if record.task is not None and not record.task.done():
            logger.warning(f"Discarding execution {execution_id} while it is still running")
            self._detached.add(record.task)
            record.task.add_done_callback(self._detached.discard)
        logger.info(f"Discarded execution {execution_id}")


# Global registry instance
registry = ExecutionRegistry()
