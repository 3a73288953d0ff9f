from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from profile_manager.controller.upsert import OperationResult
from profile_manager.errors import NotFoundError, ReconcileError

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class Step(Generic[E]):
    """One named, independently testable convergence step."""

    name: str
    fn: Callable[[E], OperationResult]

    def __call__(self, entity: E) -> OperationResult:
        return self.fn(entity)


def nop_step(name: str) -> Step[Any]:
    """Identity element for a disabled feature: keeps the step list shape stable."""
    return Step(name=name, fn=lambda _entity: OperationResult.UNCHANGED)


@dataclass
class ReconcileOutcome:
    results: Dict[str, OperationResult] = field(default_factory=dict)
    stopped: bool = False
    stopped_at: Optional[str] = None
    missing: bool = False  # entity vanished before we could load it

    @property
    def changed(self) -> bool:
        return any(r in (OperationResult.CREATED, OperationResult.UPDATED) for r in self.results.values())


def run_steps(entity: E, steps: Sequence[Step[E]], *, outcome: Optional[ReconcileOutcome] = None) -> ReconcileOutcome:
    """
    Run `steps` in order against `entity`.

    - a step returning STOP ends the cycle without error (not retried)
    - a step raising ends the cycle with ReconcileError(step.name, cause); later steps
      never run
    """
    out = outcome or ReconcileOutcome()
    for step in steps:
        try:
            res = step(entity)
        except ReconcileError:
            raise
        except Exception as e:
            raise ReconcileError(step.name, e) from e
        out.results[step.name] = res
        logger.debug("step %s: %s", step.name, res.value)
        if res == OperationResult.STOP:
            logger.debug("stop signal received from step %s", step.name)
            out.stopped = True
            out.stopped_at = step.name
            break
    return out


class Reconciler(Generic[E]):
    """
    Generic convergence driver: load one entity by key, run its step list.

    Subclasses provide `load` and `build_steps`; the step list is assembled once per
    configuration at construction time. Invoked by an external scheduler at most once
    concurrently per key; holds no locks and no state between calls.
    """

    name = "reconciler"

    def __init__(self, steps: Optional[List[Step[E]]] = None) -> None:
        self.steps: List[Step[E]] = list(steps) if steps is not None else self.build_steps()

    def build_steps(self) -> List[Step[E]]:
        raise NotImplementedError

    def load(self, name: str, namespace: Optional[str] = None) -> E:
        raise NotImplementedError

    def converge(self, entity: E) -> ReconcileOutcome:
        return run_steps(entity, self.steps)

    def reconcile(self, name: str, namespace: Optional[str] = None) -> ReconcileOutcome:
        try:
            entity = self.load(name, namespace)
        except NotFoundError:
            logger.debug("%s: %s/%s not found, nothing to do", self.name, namespace or "", name)
            return ReconcileOutcome(missing=True)
        except Exception as e:
            raise ReconcileError("read", e) from e
        return self.converge(entity)
