"""Polling loop that fires workflows when their triggers match."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .contracts import EmailEnvelope
from .engine import RunResult, WorkflowRunner
from .errors import WorkflowBusyError
from .persistence.models import RunEvent
from .triggers import TriggerManager

logger = logging.getLogger(__name__)


class Scheduler:
    """Fire due workflows through a ``WorkflowRunner``.

    A schedule trigger matches for a whole minute, so each workflow fires at
    most once per wall-clock minute no matter how often ``tick`` runs.
    """

    def __init__(
        self,
        runner: WorkflowRunner,
        triggers: Optional[TriggerManager] = None,
        poll_interval: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.runner = runner
        self.triggers = triggers or TriggerManager(runner.repository)
        self.poll_interval = poll_interval
        self._clock = clock
        self._fired: Set[Tuple[str, datetime]] = set()

    async def _fire(
        self, workflow_id: str, trigger_type: str, context: Dict[str, Any]
    ) -> Optional[RunResult]:
        await self.triggers.record_trigger(workflow_id, trigger_type, context)
        try:
            return await self.runner.run(workflow_id, trigger_type, context)
        except WorkflowBusyError as e:
            logger.info(f"Skipping {workflow_id}: {e}")
        except Exception as e:
            logger.error(f"Run of workflow {workflow_id} via {trigger_type} failed: {e}")
        return None

    async def tick(self, now: Optional[datetime] = None) -> List[RunResult]:
        """Run every workflow due at ``now`` that has not fired this minute."""
        now = now or self._clock()
        minute = now.replace(second=0, microsecond=0)
        self._fired = {key for key in self._fired if key[1] >= minute}

        results = []
        for workflow_id in await self.triggers.get_due_workflows(now):
            if (workflow_id, minute) in self._fired:
                continue
            self._fired.add((workflow_id, minute))
            result = await self._fire(
                workflow_id, "schedule", {"scheduled_for": minute.isoformat()}
            )
            if result is not None:
                results.append(result)
        return results

    async def on_file_event(self, path: str) -> List[RunResult]:
        results = []
        for workflow_id in await self.triggers.get_file_triggered_workflows(path):
            result = await self._fire(workflow_id, "file_watch", {"path": path})
            if result is not None:
                results.append(result)
        return results

    async def on_email(
        self, email: Union[EmailEnvelope, Dict[str, Any]]
    ) -> List[RunResult]:
        if isinstance(email, dict):
            email = EmailEnvelope(
                sender=email.get("sender") or email.get("from") or "",
                subject=email.get("subject") or "",
            )
        results = []
        for workflow_id in await self.triggers.get_email_triggered_workflows(email):
            result = await self._fire(workflow_id, "email_match", email.model_dump())
            if result is not None:
                results.append(result)
        return results

    async def seal_abandoned_runs(self) -> List[str]:
        """Mark ``running`` runs this process does not own as failed.

        Called on startup, when any such run belongs to a process that died
        between starting and completing it.
        """
        sealed = []
        for run in await self.runner.repository.list_runs(status="running"):
            if self.runner.is_running(run.workflow_id):
                continue
            log = run.log + [RunEvent(event="abandoned", error="run was never completed")]
            await self.runner.repository.complete_run(run.id, "failed", run.output, log)
            sealed.append(run.id)
        if sealed:
            logger.warning(f"Marked {len(sealed)} abandoned runs as failed")
        return sealed

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Poll for due workflows until ``lifespan`` seconds have passed.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        await self.seal_abandoned_runs()
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        logger.info(f"Scheduler started (poll every {self.poll_interval}s)")

        while True:
            await self.tick()
            delay = self.poll_interval
            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            await asyncio.sleep(delay)
        logger.info("Scheduler stopped")
