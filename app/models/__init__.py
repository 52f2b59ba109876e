from app.models.experiment import (  # noqa: F401
    ABTestRecord,
    TestAssignmentRecord,
    TestImpressionRecord,
    TestResultRecord,
)
