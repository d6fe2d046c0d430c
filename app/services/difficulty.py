from dataclasses import dataclass, field
from typing import Dict, List
from app.models.enums import Difficulty, DIFFICULTY_ORDER
from app.services.composer_config import ComposerConfig

@dataclass
class DistributionPlan:
    counts: Dict[Difficulty, int]
    moved: int = 0
    unfilled: int = 0
    warnings: List[str] = field(default_factory=list)

def target_distribution(config: ComposerConfig) -> Dict[Difficulty, int]:
    """Apportion the slate size over difficulties by largest remainder."""
    n = config.target_question_count
    weights = {d: float(config.difficulty_distribution.get(d, 0.0)) for d in DIFFICULTY_ORDER}
    total = sum(weights.values())
    quotas = {d: n * w / total for d, w in weights.items()}
    counts = {d: int(q) for d, q in quotas.items()}
    leftover = n - sum(counts.values())
    # Stable sort keeps easy -> medium -> hard on equal remainders
    by_remainder = sorted(DIFFICULTY_ORDER, key=lambda d: quotas[d] - counts[d], reverse=True)
    for d in by_remainder[:leftover]:
        counts[d] += 1
    return counts

def fallback_order(difficulty: Difficulty) -> List[Difficulty]:
    """Other difficulties, nearest first, easier before harder on ties."""
    idx = DIFFICULTY_ORDER.index(difficulty)
    others = [d for d in DIFFICULTY_ORDER if d != difficulty]
    return sorted(others, key=lambda d: (abs(DIFFICULTY_ORDER.index(d) - idx), DIFFICULTY_ORDER.index(d)))

def redistribute(target: Dict[Difficulty, int], available: Dict[Difficulty, int]) -> DistributionPlan:
    counts = {d: min(target.get(d, 0), available.get(d, 0)) for d in DIFFICULTY_ORDER}
    plan = DistributionPlan(counts=counts)
    for d in DIFFICULTY_ORDER:
        short = target.get(d, 0) - counts[d]
        if short <= 0:
            continue
        plan.warnings.append(
            f"Only {available.get(d, 0)} {d.value} questions available for a target of {target.get(d, 0)}"
        )
        for other in fallback_order(d):
            spare = available.get(other, 0) - counts[other]
            take = min(spare, short)
            if take > 0:
                counts[other] += take
                short -= take
                plan.moved += take
                plan.warnings.append(f"Moved {take} slot(s) from {d.value} to {other.value}")
            if short == 0:
                break
        plan.unfilled += short
    if plan.unfilled:
        plan.warnings.append(f"{plan.unfilled} slot(s) cannot be filled from the available pool")
    return plan

def validate_distribution(actual: Dict[Difficulty, int], target: Dict[Difficulty, int]) -> List[str]:
    issues = []
    for d in DIFFICULTY_ORDER:
        a, t = actual.get(d, 0), target.get(d, 0)
        if a != t:
            issues.append(f"{d.value}: selected {a}, target {t}")
    return issues

def recommended_distribution(available: Dict[Difficulty, int], config: ComposerConfig) -> dict:
    target = target_distribution(config)
    plan = redistribute(target, available)
    n = config.target_question_count
    fillable = sum(min(available.get(d, 0), target[d]) for d in DIFFICULTY_ORDER)
    recommendations = []
    for d in DIFFICULTY_ORDER:
        if available.get(d, 0) < 2 * target[d]:
            recommendations.append(
                f"Add more {d.value} questions: {available.get(d, 0)} available, {2 * target[d]} recommended"
            )
    return {
        "target": {d.value: target[d] for d in DIFFICULTY_ORDER},
        "recommended": {d.value: plan.counts[d] for d in DIFFICULTY_ORDER},
        "efficiency": round(fillable / n, 2) if n else 0.0,
        "recommendations": recommendations,
        "warnings": plan.warnings,
    }
