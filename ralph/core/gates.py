"""Blocking-gate policy.

A red gate blocks dependent work, a green gate permits it. The policy is a
pure function of the red-gate count: features are allowed iff no gate is red.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from pydantic import BaseModel, Field

from ralph.core.errors import GateBlockedError, RalphError
from ralph.core.models import Gate, GateStatus
from ralph.core.store import ItemStore

logger = logging.getLogger(__name__)


def dod_gate_id(item_id: str) -> str:
    """Id of the gate that mirrors an item's Definition of Done."""
    return f"dod-{item_id}"


class GateSummary(BaseModel):
    """Policy decision over a set of gates."""

    total: int
    red_count: int
    green_count: int
    features_allowed: bool
    red_gates: list[str] = Field(default_factory=list)


class GateEvaluator:
    """Read gates from prioritized sources and decide block/allow."""

    def __init__(self, sources: Sequence[ItemStore] = ()):
        self.sources = list(sources)

    @staticmethod
    def status(gates: Iterable[Gate]) -> GateSummary:
        gates = list(gates)
        red = [g.id for g in gates if g.status == GateStatus.RED]
        return GateSummary(
            total=len(gates),
            red_count=len(red),
            green_count=len(gates) - len(red),
            features_allowed=not red,
            red_gates=red,
        )

    def collect(self) -> list[Gate]:
        """Gates from the first source that answers.

        Sources are tried in order (external registry, then local files). A
        failing source is logged and skipped.
        """
        for source in self.sources:
            try:
                gates = source.list_gates()
            except (RalphError, OSError) as e:
                logger.warning(f"Gate source '{source.name}' unavailable: {e}")
                continue
            logger.debug(f"Loaded {len(gates)} gate(s) from {source.name}")
            return gates
        if self.sources:
            logger.warning("No gate source answered; treating gate set as empty")
        return []

    def evaluate(self) -> GateSummary:
        return self.status(self.collect())

    def enforce(self, gates: Iterable[Gate] | None = None) -> GateSummary:
        """Return the summary, or raise when any gate is red.

        Raises:
            GateBlockedError: At least one red gate
        """
        summary = self.status(self.collect() if gates is None else gates)
        if not summary.features_allowed:
            raise GateBlockedError(summary.red_gates)
        return summary
