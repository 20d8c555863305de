"""Plan definitions and the degradation ladder."""

from decimal import Decimal
from enum import Enum
from typing import List, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ResourceKind(str, Enum):
    """Billable resources a plan consumes."""

    LLM_TOKENS = "llm_tokens"
    TTS_MINUTES = "tts_minutes"
    IMAGE_GENERATIONS = "image_generations"
    RENDER_MINUTES = "render_minutes"


class PlanCode(str, Enum):
    """Closed set of ladder rungs, declared richest first."""

    FULL = "full"
    SAVER = "saver"
    MINIMAL = "minimal"
    FALLBACK = "fallback_dm"

    @property
    def rank(self) -> int:
        """Position on the ladder (0 = richest)."""
        return LADDER.index(self)

    @property
    def is_fallback(self) -> bool:
        return self is PlanCode.FALLBACK


# Enum declaration order is the ladder order.
LADDER: Tuple[PlanCode, ...] = tuple(PlanCode)

# Score weight per unit of each resource. Every weight is positive, so the score
# is monotonic in every quantity.
SCORE_WEIGHTS = {
    ResourceKind.LLM_TOKENS: Decimal("0.001"),
    ResourceKind.TTS_MINUTES: Decimal("10"),
    ResourceKind.IMAGE_GENERATIONS: Decimal("2"),
    ResourceKind.RENDER_MINUTES: Decimal("3"),
}


class PlanDefinition(BaseModel):
    """A named point on the degradation ladder with fixed resource quantities."""

    model_config = ConfigDict(frozen=True)

    code: PlanCode
    tier: str = Field(default="standard", description="Quality tier used for rate lookup")
    llm_tokens: int = Field(default=0, ge=0)
    tts_minutes: Decimal = Field(default=Decimal("0"), ge=0)
    image_generations: int = Field(default=0, ge=0)
    render_minutes: Decimal = Field(default=Decimal("0"), ge=0)
    variants: int = Field(default=1, ge=1)

    def quantities(self) -> List[Tuple[ResourceKind, Decimal]]:
        """Resource quantities consumed by one episode on this plan.

        Render compute is spent once per variant.
        """
        return [
            (ResourceKind.LLM_TOKENS, Decimal(self.llm_tokens)),
            (ResourceKind.TTS_MINUTES, Decimal(self.tts_minutes)),
            (ResourceKind.IMAGE_GENERATIONS, Decimal(self.image_generations)),
            (ResourceKind.RENDER_MINUTES, Decimal(self.render_minutes) * self.variants),
        ]


def plan_score(plan: PlanDefinition) -> Decimal:
    """Fixed richness score of a plan: weighted sum of its quantities."""
    return sum(
        (SCORE_WEIGHTS[resource] * quantity for resource, quantity in plan.quantities()),
        Decimal("0"),
    )
