from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.services.experiments.domain import ABTestStatus, ImpressionType, MetricType


class VariantConfig(BaseModel):
    id: Optional[str] = Field(None, description="Generated when omitted")
    name: str
    content: Any = None
    traffic_allocation: int = Field(..., description="Share of traffic in percent (0-100)")
    is_active: bool = True


class AudienceCriterionConfig(BaseModel):
    field: str = Field(..., description="total_purchases, session_count or last_visit")
    operator: str = Field(
        ..., description="equals, contains, greater_than, less_than, in or not_in"
    )
    value: Any = None


class AudienceConfig(BaseModel):
    segments: List[str] = []
    criteria: List[AudienceCriterionConfig] = []
    sample_size: int = Field(..., description="Minimum total events before completion")
    duration: int = Field(..., description="Minimum runtime in hours")


class MetricConfig(BaseModel):
    name: str
    type: MetricType = MetricType.SECONDARY
    calculation: str = ""
    target: Optional[float] = None


class CreateTestRequest(BaseModel):
    name: str
    description: str = ""
    variants: List[VariantConfig]
    audience: AudienceConfig
    metrics: List[MetricConfig]
    status: ABTestStatus = ABTestStatus.DRAFT
    significance: float = Field(0.95, description="Confidence level required to declare a winner")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: str = "system"


class CreatePersonalizedTestRequest(BaseModel):
    product_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class EndTestRequest(BaseModel):
    winner: Optional[str] = None


class AssignVariantRequest(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None


class RecordImpressionRequest(BaseModel):
    variant_id: str
    type: ImpressionType
    subject_key: str
    value: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


class VariantResponse(BaseModel):
    id: str
    name: str
    content: Any = None
    traffic_allocation: int
    is_active: bool

    class Config:
        from_attributes = True


class AudienceCriterionResponse(BaseModel):
    field: str
    operator: str
    value: Any = None

    class Config:
        from_attributes = True


class AudienceResponse(BaseModel):
    segments: List[str]
    criteria: List[AudienceCriterionResponse]
    sample_size: int
    duration: int

    class Config:
        from_attributes = True


class MetricResponse(BaseModel):
    name: str
    type: MetricType
    calculation: str
    target: Optional[float] = None

    class Config:
        from_attributes = True


class TestResponse(BaseModel):
    id: str
    name: str
    description: str
    variants: List[VariantResponse]
    audience: AudienceResponse
    metrics: List[MetricResponse]
    status: ABTestStatus
    winner: Optional[str] = None
    significance: float
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TestListResponse(BaseModel):
    tests: List[TestResponse]
    total: int


class AssignmentResponse(BaseModel):
    test_id: str
    variant: Optional[VariantResponse] = None


class ImpressionResponse(BaseModel):
    id: str
    test_id: str
    variant_id: str
    subject_key: str
    type: ImpressionType
    timestamp: datetime
    value: Optional[float] = None
    metadata: Dict[str, Any] = {}

    class Config:
        from_attributes = True


class RecordImpressionResponse(BaseModel):
    recorded: bool
    impression: Optional[ImpressionResponse] = None


class VariantMetricResultResponse(BaseModel):
    variant_id: str
    metric_name: str
    value: float
    total: float
    sample_size: int
    confidence: float
    p_value: float
    is_significant: bool

    class Config:
        from_attributes = True


class TestResultsResponse(BaseModel):
    test_id: str
    results: List[VariantMetricResultResponse]


class VariantPerformance(BaseModel):
    variant_id: str
    name: str
    conversion_rate: float
    click_through_rate: float
    average_value: float
    total_sample_size: int


class TestSummary(BaseModel):
    test: TestResponse
    total_impressions: int
    total_conversions: int
    total_clicks: int
    unique_users: int
    conversion_rate: float  # conversions / views
    click_through_rate: float  # clicks / views
    variant_performance: Dict[str, VariantPerformance]


class TestStats(BaseModel):
    test_status: Dict[str, int]
    total_impressions: int
    total_assignments: int
    active_tests: int


class TestHistoryResponse(BaseModel):
    subject_id: str
    tests: List[TestResponse]
