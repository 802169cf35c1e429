"""
Project complexity assessment.

Scores a project on eight criteria (0-5 points each, 0-40 total) and maps
the total onto a level 0-4. The level is what route steps dispatch on:
store `assessment.level` in a workflow variable and point the route
step's condition at it.

Default level bands (total score):
    0 Minimal        0-5
    1 Basic          6-12
    2 Standard       13-20
    3 Comprehensive  21-30
    4 Enterprise     31-40
"""

from dataclasses import dataclass, field
from datetime import datetime

from stepflow.lib.errors import StepflowError

CRITERIA = (
    "project_size",
    "team_size",
    "codebase_complexity",
    "integrations",
    "user_base",
    "security",
    "duration",
    "existing_code",
)

MIN_SCORE = 0
MAX_SCORE = 5
MAX_TOTAL = MAX_SCORE * len(CRITERIA)

DEFAULT_THRESHOLDS = (6, 13, 21, 31)


class AssessmentError(StepflowError):
    """Assessment input or configuration is out of range."""
    pass


@dataclass(frozen=True)
class LevelInfo:
    level: int
    name: str
    score_range: str
    min_score: int
    max_score: int
    workflow: str
    description: str


LEVELS = (
    LevelInfo(0, "Minimal", "0-5", 0, 5, "minimal-workflow.yaml",
              "Simple projects with minimal planning overhead"),
    LevelInfo(1, "Basic", "6-12", 6, 12, "basic-workflow.yaml",
              "Small team projects with basic planning"),
    LevelInfo(2, "Standard", "13-20", 13, 20, "standard-workflow.yaml",
              "Medium-sized projects with structured planning"),
    LevelInfo(3, "Comprehensive", "21-30", 21, 30, "comprehensive-workflow.yaml",
              "Large projects with comprehensive planning"),
    LevelInfo(4, "Enterprise", "31-40", 31, 40, "enterprise-workflow.yaml",
              "Mission-critical enterprise systems"),
)


@dataclass
class AssessmentConfig:
    """Optional knobs: disabled criteria score 0, thresholds and workflow names override defaults."""
    disabled: frozenset[str] = frozenset()
    thresholds: tuple[int, int, int, int] = DEFAULT_THRESHOLDS
    workflow_names: dict[int, str] = field(default_factory=dict)


@dataclass
class ComplexityResult:
    total_score: int
    level: int
    level_name: str
    score_range: str
    recommended_workflow: str
    breakdown: dict[str, int]
    assessed_at: str

    def to_dict(self) -> dict:
        return {
            "total_score": self.total_score,
            "level": self.level,
            "level_name": self.level_name,
            "score_range": self.score_range,
            "recommended_workflow": self.recommended_workflow,
            "breakdown": dict(self.breakdown),
            "assessed_at": self.assessed_at,
        }


def level_info(level: int) -> LevelInfo:
    if not 0 <= level < len(LEVELS):
        raise AssessmentError(f"Invalid level: {level}. Must be between 0 and {len(LEVELS) - 1}.")
    return LEVELS[level]


def calculate_level(total_score: int, thresholds: tuple[int, ...] = DEFAULT_THRESHOLDS) -> int:
    """Map a total score onto a level using ascending thresholds."""
    if len(thresholds) != 4 or list(thresholds) != sorted(thresholds):
        raise AssessmentError(f"Thresholds must be four ascending scores, got {list(thresholds)}")
    for level, threshold in enumerate(thresholds):
        if total_score < threshold:
            return level
    return len(thresholds)


def score_range(level: int, thresholds: tuple[int, ...] = DEFAULT_THRESHOLDS) -> str:
    """Total-score band for a level under the given thresholds, e.g. "13-20"."""
    low = 0 if level == 0 else thresholds[level - 1]
    high = thresholds[level] - 1 if level < len(thresholds) else MAX_TOTAL
    return f"{low}-{high}"


def validate_scores(scores: dict[str, int]) -> None:
    """Every criterion must be present and an integer 0-5.

    Raises:
        AssessmentError: on a missing, unknown or out-of-range criterion
    """
    unknown = sorted(set(scores) - set(CRITERIA))
    if unknown:
        raise AssessmentError(f"Unknown criteria: {', '.join(unknown)}")
    for name in CRITERIA:
        if name not in scores:
            raise AssessmentError(f"Missing criterion: {name}")
        value = scores[name]
        if isinstance(value, bool) or not isinstance(value, int) or not MIN_SCORE <= value <= MAX_SCORE:
            raise AssessmentError(f"Invalid {name}: {value}. Must be between {MIN_SCORE} and {MAX_SCORE}.")


def assess_complexity(scores: dict[str, int], config: AssessmentConfig | None = None) -> ComplexityResult:
    """Score a project and pick its level."""
    config = config or AssessmentConfig()
    validate_scores(scores)

    breakdown = {name: 0 if name in config.disabled else scores[name] for name in CRITERIA}
    total = sum(breakdown.values())
    level = calculate_level(total, config.thresholds)
    info = level_info(level)

    return ComplexityResult(
        total_score=total,
        level=level,
        level_name=info.name,
        score_range=score_range(level, config.thresholds),
        recommended_workflow=config.workflow_names.get(level, info.workflow),
        breakdown=breakdown,
        assessed_at=datetime.now().isoformat(),
    )
