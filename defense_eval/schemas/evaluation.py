"""
defense_eval/schemas/evaluation.py
Pydantic schemas for evaluation submission

Wire format is camelCase; attributes are snake_case. Stage-specific score
fields travel as extra keys on the member rows and on projectEvaluation
and are checked against the stage's field list.
"""
import math
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from defense_eval.core.stages import EvaluationType, get_stage
from defense_eval.errors import SubmissionValidationError

ScoreValue = Union[int, float, str, None]


def coerce_score(value: ScoreValue) -> float:
    """Normalise a submitted score; blank means zero."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ValueError("score must be a number")
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"score {value!r} is not a number")
    if not math.isfinite(score):
        raise ValueError(f"score {value!r} is not a finite number")
    return score


class IndividualEvaluationIn(BaseModel):
    """One team member's row as submitted by the evaluator."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    member: int
    performance_at_presentation: ScoreValue = 0
    absent: bool = False

    @field_validator("performance_at_presentation")
    @classmethod
    def validate_performance(cls, value):
        coerce_score(value)
        return value

    def field(self, name: str) -> ScoreValue:
        """Stage-specific field by its wire name."""
        return (self.model_extra or {}).get(name)


class ProjectEvaluationIn(BaseModel):
    """Aggregate evaluation of the whole project."""
    model_config = ConfigDict(extra="allow")

    judgement: str = Field(..., min_length=1)

    def field(self, name: str) -> ScoreValue:
        return (self.model_extra or {}).get(name)


class EvaluationSubmission(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "individualEvaluation": [
                    {"member": 11, "performanceAtPresentation": 8, "absent": False},
                    {"member": 12, "performanceAtPresentation": 7, "absent": False},
                ],
                "projectEvaluation": {
                    "judgement": "ACCEPTED",
                    "projectTitleAndAbstract": 4,
                    "project": 8,
                    "objective": 4,
                    "teamWork": 4,
                    "documentation": 8,
                    "plagiarism": 0,
                },
                "projectId": 3,
                "evaluatorId": 7,
                "defenseId": 2,
                "eventId": 1,
                "evaluationType": "proposal",
                "roomId": 5,
            }
        },
    )

    individual_evaluation: List[IndividualEvaluationIn] = Field(..., min_length=1)
    project_evaluation: ProjectEvaluationIn
    project_id: int
    evaluator_id: int
    defense_id: int
    event_id: int
    evaluation_type: EvaluationType
    room_id: int

    @model_validator(mode="after")
    def validate_against_stage(self):
        stage = get_stage(self.evaluation_type)

        if self.project_evaluation.judgement not in stage.allowed_judgements:
            allowed = ", ".join(sorted(stage.allowed_judgements))
            raise ValueError(
                f"judgement '{self.project_evaluation.judgement}' is not valid for "
                f"{stage.evaluation_type.value} evaluations (allowed: {allowed})"
            )

        for name in stage.project_fields:
            coerce_score(self.project_evaluation.field(name))

        members = [row.member for row in self.individual_evaluation]
        if len(set(members)) != len(members):
            raise ValueError("each team member may appear only once in individualEvaluation")

        for row in self.individual_evaluation:
            for name in stage.member_fields:
                coerce_score(row.field(name))

        return self

    @property
    def judgement(self) -> str:
        return self.project_evaluation.judgement


def parse_submission(payload: Optional[Dict[str, Any]]) -> EvaluationSubmission:
    """Validate a raw request body, raising SubmissionValidationError on any problem."""
    if not isinstance(payload, dict):
        raise SubmissionValidationError("Required Credentials Missing")
    try:
        return EvaluationSubmission.model_validate(payload)
    except ValidationError as e:
        errors = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg")}
            for error in e.errors()
        ]
        missing = any(error.get("type") == "missing" for error in e.errors())
        message = "Required Credentials Missing" if missing else "Invalid evaluation submission"
        raise SubmissionValidationError(message, {"errors": errors})


class EvaluationSubmissionResponse(BaseModel):
    """Response when an evaluation is recorded"""
    success: bool = True
    message: str
    data: Dict[str, Any]
    evaluator_id: int = Field(..., serialization_alias="evaluatorId")
    defense_completed: bool = Field(..., serialization_alias="defenseCompleted")
    timestamp: str
