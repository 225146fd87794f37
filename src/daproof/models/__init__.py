from daproof.models.result import Outcome, VerificationResult
from daproof.models.submission import (
    CommentSubmission,
    MirrorSubmission,
    Pointer,
    PointerType,
    PostSubmission,
    Submission,
    SubmissionType,
    parse_submission,
)

__all__ = [
    "CommentSubmission",
    "MirrorSubmission",
    "Outcome",
    "Pointer",
    "PointerType",
    "PostSubmission",
    "Submission",
    "SubmissionType",
    "VerificationResult",
    "parse_submission",
]
