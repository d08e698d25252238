"""
defense_eval/orm/student.py
Student records touched by defense outcomes
"""
from sqlalchemy import Boolean, Column, ForeignKey, Integer, String

from defense_eval.orm.base import BaseModel


class Student(BaseModel):
    __tablename__ = "students"

    name = Column(String(255), nullable=False)
    batch_year = Column(Integer, nullable=False, index=True)

    # Tier-ranged code, see defense_eval.core.progress_codes
    progress_status = Column(Integer, default=0, nullable=False)

    is_associated = Column(Boolean, default=False, nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self):
        return f"<Student(id={self.id}, status={self.progress_status})>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "batch_year": self.batch_year,
            "progress_status": self.progress_status,
            "is_associated": self.is_associated,
            "project_id": self.project_id,
        }
