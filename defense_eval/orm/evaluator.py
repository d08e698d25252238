"""
defense_eval/orm/evaluator.py
Evaluators and their per-defense access credentials
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from defense_eval.orm.base import BaseModel, isoformat


class Evaluator(BaseModel):
    __tablename__ = "evaluators"

    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, unique=True)

    defense_access = relationship(
        "EvaluatorDefenseAccess",
        back_populates="evaluator",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="EvaluatorDefenseAccess.id",
    )

    def access_for(self, defense_id: int):
        for access in self.defense_access:
            if access.defense_id == defense_id:
                return access
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
        }


class EvaluatorDefenseAccess(BaseModel):
    """One-time access code an evaluator uses for a single defense."""
    __tablename__ = "evaluator_defense_access"

    evaluator_id = Column(Integer, ForeignKey("evaluators.id", ondelete="CASCADE"), nullable=False)
    defense_id = Column(Integer, ForeignKey("defenses.id", ondelete="CASCADE"), nullable=False)
    access_code = Column(String(64), nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    evaluator = relationship("Evaluator", back_populates="defense_access")

    __table_args__ = (
        UniqueConstraint("evaluator_id", "defense_id", name="uq_evaluator_defense_access"),
    )

    @property
    def is_revoked(self) -> bool:
        return self.access_code is None

    def to_dict(self):
        # The code itself never leaves the service
        return {
            "defense_id": self.defense_id,
            "has_access_code": self.access_code is not None,
            "revoked_at": isoformat(self.revoked_at),
        }
