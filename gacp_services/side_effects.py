"""
gacp_services.side_effects -- best-effort post-commit dispatch.

Responsibility:
    Runs the notifications and staff assignments that follow a committed
    transition.  Effects run inline by default, or on a
    ``concurrent.futures.Executor`` when one is supplied.

Invariants enforced:
    - Dispatch happens only after the commit returned.
    - A failing effect is logged with its traceback and never propagates;
      it cannot roll back or alter the committed transition.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from uuid import UUID

from gacp_kernel.logging_config import get_logger

logger = get_logger("services.side_effects")


@dataclass(frozen=True)
class SideEffect:
    name: str
    application_id: UUID
    run: Callable[[], None]


class SideEffectDispatcher:
    """Executes side effects and swallows-with-logging their failures.

    Contract:
        ``dispatch`` never raises because of an effect.  With an executor,
        it returns the submitted futures so callers (tests) can wait.

    Non-goals:
        No retries or persistence of pending effects.
    """

    def __init__(self, executor: Executor | None = None):
        self._executor = executor

    def dispatch(self, effects: Sequence[SideEffect]) -> list[Future]:
        if self._executor is None:
            for effect in effects:
                self._run(effect)
            return []
        return [self._executor.submit(self._run, effect) for effect in effects]

    @staticmethod
    def _run(effect: SideEffect) -> None:
        try:
            effect.run()
        except Exception:
            logger.exception(
                "side_effect_failed",
                extra={
                    "effect": effect.name,
                    "application_id": str(effect.application_id),
                },
            )
