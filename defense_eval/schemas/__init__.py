from .evaluation import (
    EvaluationSubmission,
    EvaluationSubmissionResponse,
    IndividualEvaluationIn,
    ProjectEvaluationIn,
    coerce_score,
    parse_submission,
)
