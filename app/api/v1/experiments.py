from contextlib import contextmanager
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.models.schemas import (
    AssignmentResponse,
    AssignVariantRequest,
    CreatePersonalizedTestRequest,
    CreateTestRequest,
    EndTestRequest,
    ImpressionResponse,
    RecordImpressionRequest,
    RecordImpressionResponse,
    TestHistoryResponse,
    TestListResponse,
    TestResponse,
    TestResultsResponse,
    TestStats,
    TestSummary,
    VariantMetricResultResponse,
    VariantResponse,
)
from app.services.experiments.exceptions import (
    InvalidStateTransition,
    TestNotFoundError,
    ValidationError,
)
from app.services.experiments.service import ExperimentService

router = APIRouter()


def get_experiment_service(request: Request) -> ExperimentService:
    """Engine instance created in the application lifespan."""
    return request.app.state.experiment_service


@contextmanager
def _translate_errors():
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=422, detail={"violations": e.violations})
    except TestNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStateTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("", response_model=TestResponse, status_code=201)
async def create_test(
    request: CreateTestRequest, service: ExperimentService = Depends(get_experiment_service)
):
    with _translate_errors():
        test = await service.create_test(request)
    return TestResponse.model_validate(test)


@router.get("", response_model=TestListResponse)
async def list_active_tests(service: ExperimentService = Depends(get_experiment_service)):
    tests = await service.get_active_tests()
    return TestListResponse(tests=[TestResponse.model_validate(t) for t in tests], total=len(tests))


@router.get("/stats", response_model=TestStats)
async def get_test_stats(service: ExperimentService = Depends(get_experiment_service)):
    return await service.get_test_stats()


@router.get("/history/{subject_id}", response_model=TestHistoryResponse)
async def get_test_history(
    subject_id: str,
    limit: int = Query(10, ge=1, le=100),
    service: ExperimentService = Depends(get_experiment_service),
):
    tests = await service.get_test_history(subject_id, limit=limit)
    return TestHistoryResponse(
        subject_id=subject_id, tests=[TestResponse.model_validate(t) for t in tests]
    )


@router.post("/personalized", response_model=TestResponse, status_code=201)
async def create_personalized_test(
    request: CreatePersonalizedTestRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    try:
        with _translate_errors():
            test = await service.create_personalized_test(
                request.product_id, request.user_id, request.session_id
            )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return TestResponse.model_validate(test)


@router.get("/{test_id}", response_model=TestResponse)
async def get_test(test_id: str, service: ExperimentService = Depends(get_experiment_service)):
    test = await service.get_test(test_id)

    if not test:
        raise HTTPException(status_code=404, detail="Test not found")

    return TestResponse.model_validate(test)


@router.post("/{test_id}/start", response_model=TestResponse)
async def start_test(test_id: str, service: ExperimentService = Depends(get_experiment_service)):
    with _translate_errors():
        test = await service.start_test(test_id)
    return TestResponse.model_validate(test)


@router.post("/{test_id}/pause", response_model=TestResponse)
async def pause_test(test_id: str, service: ExperimentService = Depends(get_experiment_service)):
    with _translate_errors():
        test = await service.pause_test(test_id)
    return TestResponse.model_validate(test)


@router.post("/{test_id}/resume", response_model=TestResponse)
async def resume_test(test_id: str, service: ExperimentService = Depends(get_experiment_service)):
    with _translate_errors():
        test = await service.resume_test(test_id)
    return TestResponse.model_validate(test)


@router.post("/{test_id}/end", response_model=TestResponse)
async def end_test(
    test_id: str,
    request: Optional[EndTestRequest] = None,
    service: ExperimentService = Depends(get_experiment_service),
):
    winner = request.winner if request else None
    try:
        with _translate_errors():
            test = await service.end_test(test_id, winner=winner)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return TestResponse.model_validate(test)


@router.delete("/{test_id}", status_code=204)
async def delete_test(test_id: str, service: ExperimentService = Depends(get_experiment_service)):
    with _translate_errors():
        await service.delete_test(test_id)


@router.post("/{test_id}/assign", response_model=AssignmentResponse)
async def assign_variant(
    test_id: str,
    request: AssignVariantRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    variant = await service.assign_variant(test_id, request.user_id, request.session_id)
    return AssignmentResponse(
        test_id=test_id,
        variant=VariantResponse.model_validate(variant) if variant else None,
    )


@router.post("/{test_id}/impression", response_model=RecordImpressionResponse)
async def record_impression(
    test_id: str,
    request: RecordImpressionRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    impression = await service.record_impression(
        test_id,
        request.variant_id,
        request.type,
        request.subject_key,
        value=request.value,
        metadata=request.metadata,
    )
    return RecordImpressionResponse(
        recorded=impression is not None,
        impression=ImpressionResponse.model_validate(impression) if impression else None,
    )


@router.get("/{test_id}/results", response_model=TestResultsResponse)
async def get_test_results(
    test_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    results = await service.get_test_results(test_id)
    return TestResultsResponse(
        test_id=test_id,
        results=[VariantMetricResultResponse.model_validate(r) for r in results],
    )


@router.get("/{test_id}/summary", response_model=TestSummary)
async def get_test_summary(
    test_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    summary = await service.get_test_summary(test_id)

    if not summary:
        raise HTTPException(status_code=404, detail="Test not found")

    return summary
