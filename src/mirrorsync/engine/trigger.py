"""
Entry point used by schedulers and job runners to start a synchronization.
"""

import logging
from typing import Dict, Any, Optional

from ..exceptions import NotFoundError
from ..models.sync import LogLevel
from .sync import SyncEngine

logger = logging.getLogger(__name__)


class SyncTrigger:
    """
    Runs a synchronization on behalf of a job and reports back in the job's terms.

    The response always holds ``level``, ``message`` and ``stackTrace``; ``nextRun``
    (epoch seconds) is added when the source asked to be left alone for a while.
    """

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    def run(self, argument: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute the synchronization named in a job argument.

        Args:
            argument: Job arguments; ``synchronizationId`` is required, ``test``
                and ``force`` are optional flags

        Returns:
            The job response
        """
        argument = argument or {}
        stack_trace = ["Check for a valid synchronization ID"]

        synchronization_id = argument.get("synchronizationId")
        if not synchronization_id:
            stack_trace.append("No synchronization ID provided")
            return {"level": LogLevel.ERROR.value, "message": "No synchronization ID provided", "stackTrace": stack_trace}

        synchronization_id = str(synchronization_id)
        stack_trace.append(f"Running synchronization: {synchronization_id}")
        try:
            result = self.engine.run(
                synchronization_id,
                test=bool(argument.get("test", False)),
                force=bool(argument.get("force", False))
            )
        except NotFoundError:
            message = f"Synchronization not found: {synchronization_id}"
            logger.warning(message)
            stack_trace.append(message)
            return {"level": LogLevel.WARNING.value, "message": message, "stackTrace": stack_trace}

        stack_trace.extend(result.stack_trace)
        response: Dict[str, Any] = {
            "level": result.level.value,
            "message": result.message,
            "stackTrace": stack_trace,
        }
        if result.reschedule_at is not None:
            response["nextRun"] = int(result.reschedule_at.timestamp())
            stack_trace.append(f"Rescheduling at {result.reschedule_at.isoformat()}")
        return response
