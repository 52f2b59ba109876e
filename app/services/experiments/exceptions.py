from typing import List, Optional


class ExperimentError(Exception):
    """Base class for experimentation engine errors."""


class ValidationError(ExperimentError):
    """A test configuration violates one or more invariants.

    ``violations`` always carries every broken rule, not just the first.
    """

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("Invalid test configuration: " + "; ".join(self.violations))


class TestNotFoundError(ExperimentError):
    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(self, test_id: str):
        self.test_id = test_id
        super().__init__(f"Test not found: {test_id}")


class InvalidStateTransition(ExperimentError):
    def __init__(self, test_id: str, current: str, target: str):
        self.test_id = test_id
        self.current = current
        self.target = target
        super().__init__(f"Test {test_id} cannot move from {current} to {target}")


class ConcurrencyConflict(ExperimentError):
    """A concurrent writer won a race for the same record."""


class AssignmentConflict(ConcurrencyConflict):
    def __init__(self, test_id: str, subject_key: str):
        self.test_id = test_id
        self.subject_key = subject_key
        super().__init__(f"Subject {subject_key} is already assigned in test {test_id}")


class StorageFailure(ExperimentError):
    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Storage operation '{operation}' failed{detail}")
