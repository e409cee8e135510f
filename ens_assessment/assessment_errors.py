# ens_assessment/assessment_errors.py


class AssessmentError(Exception):
    """
    Base class for every error the engine surfaces to its callers.

    - retryable:   the caller may resubmit the same request unchanged.
    - http_status: status code used by the HTTP adapter.
    """

    retryable = False
    http_status = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            **{k: v for k, v in self.context.items() if v is not None},
        }


class CatalogError(AssessmentError):
    pass


class ExtractionUnavailable(AssessmentError):
    retryable = True
    http_status = 503


class InvalidFieldValue(AssessmentError):
    # raised by require_valid_field_value, absorbed by the evaluator
    http_status = 422


class SessionNotFound(AssessmentError):
    http_status = 404


class QuestionNotFound(AssessmentError):
    http_status = 404


class FieldNotFound(AssessmentError):
    http_status = 404


class AnswerNotFound(AssessmentError):
    http_status = 404


class ConcurrentMutationConflict(AssessmentError):
    retryable = True
    http_status = 409


class InvalidTransition(AssessmentError):
    http_status = 409


class PrerequisitesNotMet(AssessmentError):
    http_status = 409


class DeleteNotConfirmed(AssessmentError):
    http_status = 400


class AnswerStoreUnavailable(AssessmentError):
    retryable = True
    http_status = 503
