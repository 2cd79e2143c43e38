from typing import Callable

from lab_requests.schemas.lab import FailureKind, Lab, ValidationFailure

# Any callable with this shape can replace the default completion rules.
LabValidator = Callable[[Lab], ValidationFailure | None]

UNABLE_TO_COMPLETE = "Unable to complete lab request."
RESULT_REQUIRED_TO_COMPLETE = "A result is required to complete a lab request."


def validate_complete(draft: Lab) -> ValidationFailure | None:
    if not draft.result:
        return ValidationFailure(
            kind=FailureKind.VALIDATION,
            message=UNABLE_TO_COMPLETE,
            fields={"result": RESULT_REQUIRED_TO_COMPLETE},
        )
    return None


def chain_validators(*validators: LabValidator) -> LabValidator:
    """Run validators in order and return the first failure."""

    def _validate(draft: Lab) -> ValidationFailure | None:
        for validator in validators:
            failure = validator(draft)
            if failure is not None:
                return failure
        return None

    return _validate
