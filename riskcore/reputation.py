# riskcore/reputation.py
"""Fund manager reputation, recomputed from performance and compliance history."""

import logging
from dataclasses import dataclass
from decimal import Decimal

from .models import FundManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReputationConfig:
    min_operations: int = 5            # Not enough data below this
    rejection_weight: Decimal = Decimal(40)
    slash_penalty: Decimal = Decimal(15)
    max_slash_penalty: Decimal = Decimal(60)
    clean_bonus: Decimal = Decimal("0.5")
    max_clean_bonus: Decimal = Decimal(10)


def recompute_reputation(manager: FundManager, config: ReputationConfig = ReputationConfig()) -> Decimal:
    """
    Score = 100 - rejection_rate * 40 - min(slashes * 15, 60) + min(clean * 0.5, 10),
    clamped to [0, 100]. A banned manager scores 0.
    """
    if manager.banned:
        manager.reputation_score = Decimal(0)
        return manager.reputation_score

    slash_penalty = min(manager.slash_count * config.slash_penalty, config.max_slash_penalty)

    if manager.operations < config.min_operations:
        score = Decimal(100) - slash_penalty
    else:
        rejection_rate = Decimal(manager.rejections) / Decimal(manager.operations)
        clean_bonus = min(manager.clean_operations * config.clean_bonus, config.max_clean_bonus)
        score = Decimal(100) - rejection_rate * config.rejection_weight - slash_penalty + clean_bonus

    manager.reputation_score = max(Decimal(0), min(Decimal(100), score)).quantize(Decimal("0.01"))

    logger.debug(
        f"[REPUTATION] {manager.manager_id} score={manager.reputation_score} "
        f"(ops={manager.operations}, rejected={manager.rejections}, slashes={manager.slash_count})"
    )
    return manager.reputation_score


def record_outcome(manager: FundManager, approved: bool, clean: bool) -> Decimal:
    """Count one operation outcome and refresh the score."""
    manager.operations += 1
    if not approved:
        manager.rejections += 1
    elif clean:
        manager.clean_operations += 1
    return recompute_reputation(manager)
