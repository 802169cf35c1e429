"""Tests for stepflow.workflow.complexity module."""

import pytest

from stepflow.workflow.complexity import (
    CRITERIA,
    AssessmentConfig,
    AssessmentError,
    assess_complexity,
    calculate_level,
    level_info,
    score_range,
    validate_scores,
)


def scores(**overrides):
    values = {name: 0 for name in CRITERIA}
    values.update(overrides)
    return values


class TestCalculateLevel:
    """Total score to level under ascending thresholds."""

    @pytest.mark.parametrize("total,level", [
        (0, 0), (5, 0), (6, 1), (12, 1), (13, 2), (20, 2), (21, 3), (30, 3), (31, 4), (40, 4),
    ])
    def test_default_bands(self, total, level):
        """Band edges of the default thresholds."""
        assert calculate_level(total) == level

    def test_custom_thresholds(self):
        """Caller thresholds replace the defaults."""
        assert calculate_level(3, (2, 4, 6, 8)) == 1

    def test_thresholds_must_ascend(self):
        """Descending thresholds are refused."""
        with pytest.raises(AssessmentError, match="ascending"):
            calculate_level(3, (10, 5, 20, 30))

    def test_thresholds_must_be_four(self):
        """Anything but four thresholds is refused."""
        with pytest.raises(AssessmentError):
            calculate_level(3, (5, 10))


class TestScoreRange:
    """Band text for a level."""

    def test_default_bands(self):
        """Lowest, middle and top bands under the defaults."""
        assert score_range(0) == "0-5"
        assert score_range(2) == "13-20"
        assert score_range(4) == "31-40"

    def test_custom_thresholds(self):
        """Bands follow the thresholds passed in."""
        assert score_range(1, (2, 4, 6, 8)) == "2-3"
        assert score_range(4, (2, 4, 6, 8)) == "8-40"


class TestValidateScores:
    """Criterion presence and range checks."""

    def test_missing_criterion(self):
        """Every criterion must be scored."""
        values = scores()
        del values["security"]
        with pytest.raises(AssessmentError, match="Missing criterion: security"):
            validate_scores(values)

    def test_unknown_criterion(self):
        """Extra criteria are named in the error."""
        with pytest.raises(AssessmentError, match="Unknown criteria: budget"):
            validate_scores(scores(budget=3))

    @pytest.mark.parametrize("value", [-1, 6, 2.5, True, "3"])
    def test_out_of_range(self, value):
        """Only integers 0-5 are accepted."""
        with pytest.raises(AssessmentError, match="Must be between 0 and 5"):
            validate_scores(scores(team_size=value))


class TestAssess:
    """assess_complexity() results."""

    def test_standard_project(self):
        """A total of 13 is a Standard project."""
        result = assess_complexity(scores(project_size=5, team_size=5, codebase_complexity=3))
        assert result.total_score == 13
        assert result.level == 2
        assert result.level_name == "Standard"
        assert result.score_range == "13-20"
        assert result.recommended_workflow == "standard-workflow.yaml"

    def test_custom_thresholds_reported_range(self):
        """The reported range is the band of the thresholds actually used."""
        result = assess_complexity(scores(team_size=3), AssessmentConfig(thresholds=(2, 4, 6, 8)))
        assert result.level == 1
        assert result.score_range == "2-3"

    def test_all_max_is_enterprise(self):
        """Every criterion at 5 reaches the top level."""
        result = assess_complexity({name: 5 for name in CRITERIA})
        assert result.total_score == 40
        assert result.level == 4

    def test_disabled_criteria_score_zero(self):
        """Disabled criteria contribute nothing."""
        config = AssessmentConfig(disabled=frozenset({"security"}))
        result = assess_complexity(scores(security=5, team_size=2), config)
        assert result.breakdown["security"] == 0
        assert result.total_score == 2

    def test_workflow_name_override(self):
        """Configured names replace the default recommended workflow."""
        config = AssessmentConfig(workflow_names={0: "tiny.yaml"})
        assert assess_complexity(scores(), config).recommended_workflow == "tiny.yaml"

    def test_to_dict(self):
        """The dict form carries the breakdown and a timestamp."""
        data = assess_complexity(scores()).to_dict()
        assert data["level"] == 0
        assert set(data["breakdown"]) == set(CRITERIA)
        assert "assessed_at" in data

    def test_level_info_bounds(self):
        """Levels past 4 are refused."""
        assert level_info(4).name == "Enterprise"
        with pytest.raises(AssessmentError):
            level_info(5)
