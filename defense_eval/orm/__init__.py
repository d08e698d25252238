from .base import Base

from .project import (
    Project,
    ProjectStage,
    ProjectStatus,
    DefenseObject,
    DefenseObjectEvaluator,
    project_members,
)
from .defense import Defense, DefenseStatus, Room, room_projects, room_evaluators
from .student import Student
from .evaluator import Evaluator, EvaluatorDefenseAccess
from .evaluation import Evaluation, DefenseEvaluationLink, ProjectEvaluationLink
