"""
defense_eval/orm/defense.py
Defenses (scheduled evaluation events) and their rooms

Room.is_completed and Defense.status are derived by the completion
aggregator; no request handler writes them directly.
"""
from enum import Enum as PyEnum
from typing import Any, Dict

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Table
from sqlalchemy.orm import relationship

from defense_eval.core.stages import EvaluationType
from defense_eval.orm.base import Base, BaseModel, isoformat


class DefenseStatus(str, PyEnum):
    ACTIVE = "active"
    COMPLETE = "complete"


room_projects = Table(
    "room_projects",
    Base.metadata,
    Column("room_id", Integer, ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True),
    Column("project_id", Integer, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True),
)

room_evaluators = Table(
    "room_evaluators",
    Base.metadata,
    Column("room_id", Integer, ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True),
    Column("evaluator_id", Integer, ForeignKey("evaluators.id", ondelete="CASCADE"), primary_key=True),
)


class Defense(BaseModel):
    __tablename__ = "defenses"

    event_id = Column(Integer, nullable=True, index=True)
    defense_type = Column(Enum(EvaluationType), nullable=False)
    status = Column(Enum(DefenseStatus), default=DefenseStatus.ACTIVE, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    rooms = relationship(
        "Room",
        back_populates="defense",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Room.id",
    )
    evaluation_links = relationship(
        "DefenseEvaluationLink",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DefenseEvaluationLink.id",
    )

    @property
    def is_complete(self) -> bool:
        return self.status == DefenseStatus.COMPLETE

    @property
    def evaluation_ids(self):
        return [link.evaluation_id for link in self.evaluation_links]

    def __repr__(self):
        return f"<Defense(id={self.id}, type={self.defense_type}, status={self.status})>"

    def to_dict(self, include_rooms: bool = False) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "event_id": self.event_id,
            "defense_type": self.defense_type.value,
            "status": self.status.value,
            "completed_at": isoformat(self.completed_at),
            "evaluations": self.evaluation_ids,
        }
        if include_rooms:
            result["rooms"] = [room.to_dict(include_members=True) for room in self.rooms]
        return result


class Room(BaseModel):
    __tablename__ = "rooms"

    defense_id = Column(Integer, ForeignKey("defenses.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(120), nullable=True)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    defense = relationship("Defense", back_populates="rooms")
    projects = relationship(
        "Project",
        secondary=room_projects,
        lazy="selectin",
        order_by="Project.id",
    )
    evaluators = relationship(
        "Evaluator",
        secondary=room_evaluators,
        lazy="selectin",
        order_by="Evaluator.id",
    )

    def to_dict(self, include_members: bool = False) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "defense_id": self.defense_id,
            "name": self.name,
            "is_completed": self.is_completed,
            "completed_at": isoformat(self.completed_at),
        }
        if include_members:
            result["projects"] = [project.to_dict() for project in self.projects]
            result["evaluators"] = [evaluator.to_dict() for evaluator in self.evaluators]
        else:
            result["projects"] = [project.id for project in self.projects]
            result["evaluators"] = [evaluator.id for evaluator in self.evaluators]
        return result
