"""
defense_eval/orm/evaluation.py
Evaluation records (append-only) and their backlinks

Exactly one Evaluation exists per (project, defense, evaluator); the
unique constraint backs up the submission gate. Records are never
updated or deleted through the ORM.
"""
from typing import Any, Dict

from sqlalchemy import Column, Enum, ForeignKey, Integer, UniqueConstraint, event
from sqlalchemy.orm import relationship

from defense_eval.core.db_types import PayloadJSON
from defense_eval.core.stages import EvaluationType
from defense_eval.orm.base import BaseModel, isoformat


class Evaluation(BaseModel):
    __tablename__ = "evaluations"

    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    evaluator_id = Column(Integer, ForeignKey("evaluators.id", ondelete="CASCADE"), nullable=False, index=True)
    defense_id = Column(Integer, ForeignKey("defenses.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, nullable=False)
    evaluation_type = Column(Enum(EvaluationType), nullable=False)

    # Canonical per-member rows, see services.record_writer
    individual_evaluation = Column(PayloadJSON, nullable=False)
    project_evaluation = Column(PayloadJSON, nullable=False)

    evaluator = relationship("Evaluator", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("project_id", "defense_id", "evaluator_id", name="uq_evaluation_triple"),
    )

    def __repr__(self):
        return (
            f"<Evaluation(id={self.id}, project={self.project_id}, "
            f"defense={self.defense_id}, evaluator={self.evaluator_id})>"
        )

    def to_dict(self, include_evaluator: bool = False) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "project": self.project_id,
            "evaluator": self.evaluator_id,
            "defense": self.defense_id,
            "event": self.event_id,
            "evaluation_type": self.evaluation_type.value,
            "individual_evaluation": self.individual_evaluation,
            "project_evaluation": self.project_evaluation,
            "created_at": isoformat(self.created_at),
        }
        if include_evaluator and self.evaluator is not None:
            result["evaluator"] = self.evaluator.to_dict()
        return result


class DefenseEvaluationLink(BaseModel):
    __tablename__ = "defense_evaluation_links"

    defense_id = Column(Integer, ForeignKey("defenses.id", ondelete="CASCADE"), nullable=False, index=True)
    evaluation_id = Column(Integer, ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("defense_id", "evaluation_id", name="uq_defense_evaluation_link"),
    )


class ProjectEvaluationLink(BaseModel):
    __tablename__ = "project_evaluation_links"

    project_stage_id = Column(
        Integer,
        ForeignKey("project_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    evaluation_id = Column(Integer, ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("project_stage_id", "evaluation_id", name="uq_project_evaluation_link"),
    )


@event.listens_for(Evaluation, 'before_insert')
def validate_evaluation_before_insert(mapper, connection, target):
    if not target.individual_evaluation:
        raise ValueError("individual_evaluation must not be empty")
    if not isinstance(target.project_evaluation, dict):
        raise ValueError("project_evaluation must be an object")


@event.listens_for(Evaluation, 'before_update')
def prevent_evaluation_update(mapper, connection, target):
    raise ValueError("Evaluation records are append-only")
