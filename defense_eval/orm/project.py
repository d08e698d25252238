"""
defense_eval/orm/project.py
Projects and their per-stage defense bookkeeping

A project has one ProjectStage per evaluation type. Each stage owns the
defense-objects (one per defense occurrence, several when a team
re-defends) and every defense-object owns its evaluator slots.
"""
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Table,
    UniqueConstraint
)
from sqlalchemy.orm import relationship

from defense_eval.core.stages import EvaluationType
from defense_eval.orm.base import Base, BaseModel, isoformat


class ProjectStatus(str, PyEnum):
    ACTIVE = "active"
    COMPLETE = "complete"
    ARCHIVED = "archived"


project_members = Table(
    "project_members",
    Base.metadata,
    Column("project_id", Integer, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), primary_key=True),
)


class Project(BaseModel):
    __tablename__ = "projects"

    title = Column(String(255), nullable=False)
    event_id = Column(Integer, nullable=True, index=True)
    status = Column(Enum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False)

    team_members = relationship(
        "Student",
        secondary=project_members,
        lazy="selectin",
        order_by="Student.id",
    )
    stages = relationship(
        "ProjectStage",
        back_populates="project",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def stage(self, evaluation_type: EvaluationType) -> Optional["ProjectStage"]:
        for stage in self.stages:
            if stage.evaluation_type == EvaluationType(evaluation_type):
                return stage
        return None

    def __repr__(self):
        return f"<Project(id={self.id}, status={self.status})>"

    def to_dict(self, include_stages: bool = False) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "title": self.title,
            "event_id": self.event_id,
            "status": self.status.value if self.status else None,
            "team_members": [member.to_dict() for member in self.team_members],
        }
        if include_stages:
            result["stages"] = {
                stage.evaluation_type.value: stage.to_dict()
                for stage in sorted(self.stages, key=lambda s: s.id)
            }
        return result


class ProjectStage(BaseModel):
    """Per-evaluation-type section of a project."""
    __tablename__ = "project_stages"

    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    evaluation_type = Column(Enum(EvaluationType), nullable=False)
    has_graduated = Column(Boolean, default=False, nullable=False)
    report_path = Column(String(512), nullable=True)

    project = relationship("Project", back_populates="stages")
    defense_objects = relationship(
        "DefenseObject",
        back_populates="stage",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DefenseObject.id",
    )
    evaluation_links = relationship(
        "ProjectEvaluationLink",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ProjectEvaluationLink.id",
    )

    __table_args__ = (
        UniqueConstraint("project_id", "evaluation_type", name="uq_project_stage"),
    )

    @property
    def evaluation_ids(self):
        return [link.evaluation_id for link in self.evaluation_links]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "evaluation_type": self.evaluation_type.value,
            "has_graduated": self.has_graduated,
            "report_path": self.report_path,
            "defenses": [obj.to_dict() for obj in self.defense_objects],
            "evaluations": self.evaluation_ids,
        }


class DefenseObject(BaseModel):
    """One defense occurrence of a project stage and its evaluator list."""
    __tablename__ = "defense_objects"

    project_stage_id = Column(
        Integer,
        ForeignKey("project_stages.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    evaluation_type = Column(Enum(EvaluationType), nullable=False)
    defense_id = Column(Integer, ForeignKey("defenses.id", ondelete="CASCADE"), nullable=False)

    is_graded = Column(Boolean, default=False, nullable=False)
    graded_at = Column(DateTime, nullable=True)

    stage = relationship("ProjectStage", back_populates="defense_objects")
    evaluators = relationship(
        "DefenseObjectEvaluator",
        back_populates="defense_object",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DefenseObjectEvaluator.id",
    )

    __table_args__ = (
        Index("idx_defense_object_lookup", "project_id", "evaluation_type", "defense_id"),
    )

    @property
    def all_evaluated(self) -> bool:
        return all(slot.has_evaluated for slot in self.evaluators)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "defense_id": self.defense_id,
            "is_graded": self.is_graded,
            "graded_at": isoformat(self.graded_at),
            "evaluators": [slot.to_dict() for slot in self.evaluators],
        }


class DefenseObjectEvaluator(BaseModel):
    """
    One evaluator's slot on a defense-object.

    The owning (project, evaluation type, defense) is repeated here so the
    submission gate can flip has_evaluated with a single-row conditional
    UPDATE keyed by uq_evaluator_slot.
    """
    __tablename__ = "defense_object_evaluators"

    defense_object_id = Column(
        Integer,
        ForeignKey("defense_objects.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    evaluation_type = Column(Enum(EvaluationType), nullable=False)
    defense_id = Column(Integer, ForeignKey("defenses.id", ondelete="CASCADE"), nullable=False)
    evaluator_id = Column(Integer, ForeignKey("evaluators.id", ondelete="CASCADE"), nullable=False)

    has_evaluated = Column(Boolean, default=False, nullable=False)
    evaluated_at = Column(DateTime, nullable=True)

    defense_object = relationship("DefenseObject", back_populates="evaluators")

    __table_args__ = (
        UniqueConstraint(
            "project_id", "evaluation_type", "defense_id", "evaluator_id",
            name="uq_evaluator_slot"
        ),
        UniqueConstraint("defense_object_id", "evaluator_id", name="uq_defense_object_evaluator"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluator": self.evaluator_id,
            "has_evaluated": self.has_evaluated,
            "evaluated_at": isoformat(self.evaluated_at),
        }
