"""Trigger plug-in contract.

A trigger turns outside activity (cron ticks, record changes, webhooks)
into executions. Triggers are registered on the engine by type and are
started and stopped together with it:

    engine.register_trigger(Scheduler(engine, schedule_store))
    engine.start()
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class FlowTrigger(Protocol):
    """Anything with a ``type`` that can be started and stopped."""

    type: str

    def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...
