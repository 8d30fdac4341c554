"""Token and cost accounting for one extraction run."""

from typing import Dict, Tuple

from menu_extraction.core.exceptions import ValidationError
from menu_extraction.models.menu_models import ExtractionCosts, ModelTier, PhaseCost, TokenUsage
from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)

# USD per 1M tokens (input, output)
MODEL_PRICING: Dict[ModelTier, Tuple[float, float]] = {
    ModelTier.PRO: (2.50, 10.00),
    ModelTier.FLASH: (0.075, 0.30),
    ModelTier.FLASH_LITE: (0.075, 0.30),
}

IMAGE_COST = 0.00025

TRACKED_PHASES = (1, 2, 3)


def calculate_cost(tier: ModelTier, input_tokens: int, output_tokens: int, image_count: int = 0) -> float:
    """Price a single call.

    Example:
        >>> calculate_cost(ModelTier.PRO, 1_000_000, 0)
        2.5
    """
    input_price, output_price = MODEL_PRICING[tier]
    return (
        input_tokens / 1_000_000 * input_price
        + output_tokens / 1_000_000 * output_price
        + image_count * IMAGE_COST
    )


class TokenCostTracker:
    """Append-only per-phase ledger of model usage.

    Recording is synchronous, so batches running concurrently on the event
    loop cannot interleave inside a single update. Totals are always derived
    from the phase entries, which keeps ``total`` equal to the phase sum.
    """

    def __init__(self):
        self._phases: Dict[int, PhaseCost] = {phase: PhaseCost() for phase in TRACKED_PHASES}
        self._call_index = 0

    def record_call(
        self,
        phase: int,
        tier: ModelTier,
        input_tokens: int,
        output_tokens: int,
        image_count: int = 0,
    ) -> TokenUsage:
        """Record one model call against a phase.

        Args:
            phase: Pipeline phase (1, 2 or 3)
            tier: Model tier that served the call
            input_tokens: Prompt tokens reported by the API
            output_tokens: Candidate tokens reported by the API
            image_count: Number of image payloads in the request

        Returns:
            TokenUsage for this call

        Raises:
            ValidationError: If the phase is not tracked
        """
        if phase not in self._phases:
            raise ValidationError(f"Cannot record cost for untracked phase {phase}")

        input_tokens = max(0, int(input_tokens or 0))
        output_tokens = max(0, int(output_tokens or 0))
        cost = calculate_cost(tier, input_tokens, output_tokens, image_count)

        entry = self._phases[phase]
        entry.input += input_tokens
        entry.output += output_tokens
        entry.cost += cost
        entry.calls += 1
        self._call_index += 1

        LOGGER.debug(
            f"Call #{self._call_index} phase {phase} ({tier.value}): "
            f"{input_tokens} in / {output_tokens} out, ${cost:.6f}",
            extra={"phase": phase},
        )
        return TokenUsage(input=input_tokens, output=output_tokens, cost=cost)

    def phase_cost(self, phase: int) -> PhaseCost:
        return self._phases[phase].model_copy()

    def total_cost(self) -> float:
        return sum(entry.cost for entry in self._phases.values())

    def total_calls(self) -> int:
        return sum(entry.calls for entry in self._phases.values())

    def total_tokens(self) -> Dict[str, int]:
        return {
            "input": sum(entry.input for entry in self._phases.values()),
            "output": sum(entry.output for entry in self._phases.values()),
        }

    def detailed_costs(self) -> ExtractionCosts:
        """Snapshot of the ledger. Safe to call at any point, including after a failure."""
        phase1, phase2, phase3 = (self.phase_cost(p) for p in TRACKED_PHASES)
        return ExtractionCosts(
            phase1=phase1,
            phase2=phase2,
            phase3=phase3,
            total=phase1.cost + phase2.cost + phase3.cost,
            total_calls=phase1.calls + phase2.calls + phase3.calls,
            total_tokens=self.total_tokens(),
        )

    def cost_per_item(self, item_count: int) -> float:
        if item_count <= 0:
            return 0.0
        return self.total_cost() / item_count

    def validate_real_costs(self) -> bool:
        """Return False when calls were recorded without token usage metadata."""
        tokens = self.total_tokens()
        if self.total_calls() > 0 and (tokens["input"] == 0 or tokens["output"] == 0):
            LOGGER.warning("Some API calls recorded zero tokens - usage metadata may be missing")
            return False
        return True

    def log_phase_cost(self, phase: int, description: str) -> None:
        entry = self._phases[phase]
        LOGGER.info(
            f"Phase {phase} ({description}): ${entry.cost:.4f} across {entry.calls} calls",
            extra={"phase": phase},
        )

    def reset(self) -> None:
        self._phases = {phase: PhaseCost() for phase in TRACKED_PHASES}
        self._call_index = 0
