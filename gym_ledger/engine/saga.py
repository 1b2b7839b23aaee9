"""
Saga runner for multi-record writes against a store without multi-statement
atomicity.

Each step is a forward action plus an optional compensating action. Steps
run in order and share a context dict: a step's return value is stored under
its name so later steps can use it. If step k fails, steps k-1..1 are
compensated in reverse order.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from gym_ledger.engine.errors import PartiallyApplied, TransitionFailed

logger = logging.getLogger(__name__)

Action = Callable[[Dict[str, Any]], Any]
Compensation = Callable[[Dict[str, Any], Any], None]


@dataclass
class SagaStep:
    name: str
    action: Action
    compensate: Optional[Compensation] = None


class Saga:
    """Ordered forward steps with matched compensations"""

    def __init__(self, name: str):
        self.name = name
        self.steps: List[SagaStep] = []

    def step(self, name: str, action: Action, compensate: Optional[Compensation] = None) -> 'Saga':
        self.steps.append(SagaStep(name, action, compensate))
        return self

    def run(self, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        context = context if context is not None else {}
        completed: List[SagaStep] = []

        for step in self.steps:
            try:
                context[step.name] = step.action(context)
            except Exception as exc:
                logger.error(f"Saga {self.name}: step '{step.name}' failed: {exc}")
                if not completed:
                    # Nothing was written yet
                    raise
                self._compensate(step.name, exc, completed, context)
            else:
                completed.append(step)
                logger.info(f"Saga {self.name}: step '{step.name}' done")

        return context

    def _compensate(self, failed_step: str, cause: Exception, completed: List[SagaStep], context):
        compensated, failed = [], []

        for step in reversed(completed):
            if step.compensate is None:
                compensated.append(step.name)
                continue
            try:
                step.compensate(context, context.get(step.name))
            except Exception as exc:
                logger.error(f"Saga {self.name}: compensation of '{step.name}' failed: {exc}")
                failed.append(step.name)
            else:
                logger.info(f"Saga {self.name}: compensated '{step.name}'")
                compensated.append(step.name)

        if failed:
            raise PartiallyApplied(failed_step, cause, compensated, failed) from cause
        raise TransitionFailed(failed_step, cause, compensated) from cause
