"""Orchestration layer: periodic background coordination."""

from intent_exchange.orchestration.sweeper import ExpirySweeper, SweepReport

__all__ = ["ExpirySweeper", "SweepReport"]
