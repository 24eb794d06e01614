"""API routes for the dispatch engine."""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dispatch.models.assignment import (
    Assignment,
    AssignmentStatus,
    CandidateFilters,
    DeliveryException,
    ExceptionSeverity,
    ExceptionType,
    OfferDecision,
)
from dispatch.models.driver import Driver, DriverStatus, VehicleType
from dispatch.models.outcomes import (
    AssignmentOutcome,
    AssignmentOutcomeStatus,
    BatchOutcome,
    DriverCandidate,
    ETAResult,
    RespondResult,
)
from dispatch.models.report import DeliveryReport, ReportFilters
from dispatch.models.route import RouteConstraints, RoutePlan, StopType, Waypoint
from dispatch.models.tracking import TrackingEvent, TrackingProgress
from dispatch.services.engine import DispatchEngine
from dispatch.utils.geo import make_location
from dispatch.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


# Request/Response Models


class CoordinatesIn(BaseModel):
    """Raw coordinates; range checks happen in the engine."""

    lat: float
    lng: float


class WaypointIn(CoordinatesIn):
    type: StopType = StopType.WAYPOINT
    order_id: UUID | None = None
    label: str | None = None


class DriverStatusRequest(BaseModel):
    is_online: bool | None = None
    is_available: bool | None = None
    status: DriverStatus | None = None
    location: CoordinatesIn | None = None


class AssignOrderRequest(BaseModel):
    order_id: UUID
    vehicle_type: VehicleType | None = None
    zone_id: UUID | None = None
    max_distance_km: float | None = Field(default=None, gt=0)


class RespondRequest(BaseModel):
    driver_id: UUID
    decision: OfferDecision
    reason: str | None = None


class DeliveryStatusRequest(BaseModel):
    driver_id: UUID
    status: AssignmentStatus


class ReasonRequest(BaseModel):
    reason: str = Field(min_length=1)


class LocationPingRequest(CoordinatesIn):
    timestamp: datetime | None = None


class ExceptionRequest(BaseModel):
    type: ExceptionType
    details: dict[str, Any] = {}
    severity: ExceptionSeverity | None = None


class RouteRequest(BaseModel):
    waypoints: list[WaypointIn]
    constraints: RouteConstraints | None = None
    origin: CoordinatesIn | None = None


class RouteETAResponse(BaseModel):
    route: RoutePlan
    eta: ETAResult


class BatchRequest(BaseModel):
    order_ids: list[UUID]


# Dependency to get the engine


def get_engine(request: Request) -> DispatchEngine:
    """Engine built during application startup."""
    return request.app.state.engine


def _waypoints(items: list[WaypointIn]) -> list[Waypoint]:
    return [
        Waypoint(
            location=make_location(item.lat, item.lng),
            type=item.type,
            order_id=item.order_id,
            label=item.label,
        )
        for item in items
    ]


# Driver endpoints


@router.get("/drivers/search", response_model=list[DriverCandidate])
async def search_drivers(
    lat: float,
    lng: float,
    vehicle_type: VehicleType | None = None,
    zone_id: UUID | None = None,
    max_distance_km: float | None = Query(default=None, gt=0),
    engine: DispatchEngine = Depends(get_engine),
) -> list[DriverCandidate]:
    """Ranked drivers able to serve a point."""
    filters = CandidateFilters(
        vehicle_type=vehicle_type, zone_id=zone_id, max_distance_km=max_distance_km
    )
    return await engine.find_drivers(lat, lng, filters)


@router.get("/drivers/{driver_id}", response_model=Driver)
async def get_driver(driver_id: UUID, engine: DispatchEngine = Depends(get_engine)) -> Driver:
    return await engine.get_driver(driver_id)


@router.patch("/drivers/{driver_id}/status", response_model=Driver)
async def update_driver_status(
    driver_id: UUID,
    request: DriverStatusRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> Driver:
    """Update online/available flags, account status or location."""
    location = make_location(request.location.lat, request.location.lng) if request.location else None
    return await engine.update_driver_status(
        driver_id,
        is_online=request.is_online,
        is_available=request.is_available,
        status=request.status,
        location=location,
    )


@router.get("/drivers/{driver_id}/tracking", response_model=list[TrackingEvent])
async def get_driver_tracking(
    driver_id: UUID,
    start: datetime | None = None,
    end: datetime | None = None,
    engine: DispatchEngine = Depends(get_engine),
) -> list[TrackingEvent]:
    return await engine.driver_tracking_history(driver_id, start, end)


# Assignment endpoints


@router.post("/assignments", response_model=AssignmentOutcome)
async def assign_order(
    request: AssignOrderRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    """
    Offer an order to the best available driver.

    Returns 201 when an offer was made and 200 with
    status "no_drivers_available" when nobody qualifies.
    """
    filters = CandidateFilters(
        vehicle_type=request.vehicle_type,
        zone_id=request.zone_id,
        max_distance_km=request.max_distance_km,
    )
    outcome = await engine.assign_order(request.order_id, filters)

    logger.info(
        "assignment_requested",
        order_id=str(request.order_id),
        outcome=outcome.status.value,
    )

    code = (
        status.HTTP_201_CREATED
        if outcome.status == AssignmentOutcomeStatus.ASSIGNED
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=outcome.model_dump(mode="json"))


@router.get("/assignments/{assignment_id}", response_model=Assignment)
async def get_assignment(
    assignment_id: UUID,
    engine: DispatchEngine = Depends(get_engine),
) -> Assignment:
    return await engine.get_assignment(assignment_id)


@router.post("/assignments/{assignment_id}/respond", response_model=RespondResult)
async def respond_to_offer(
    assignment_id: UUID,
    request: RespondRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    """Accept or decline an offer. Stale answers come back as 409."""
    result = await engine.respond_to_offer(
        assignment_id, request.driver_id, request.decision, request.reason
    )
    code = status.HTTP_409_CONFLICT if result.is_stale else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@router.post("/assignments/{assignment_id}/status", response_model=Assignment)
async def update_delivery_status(
    assignment_id: UUID,
    request: DeliveryStatusRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> Assignment:
    return await engine.update_delivery_status(assignment_id, request.driver_id, request.status)


@router.post("/assignments/{assignment_id}/cancel", response_model=Assignment)
async def cancel_assignment(
    assignment_id: UUID,
    request: ReasonRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> Assignment:
    return await engine.cancel_assignment(assignment_id, request.reason)


@router.post("/assignments/{assignment_id}/fail", response_model=Assignment)
async def fail_assignment(
    assignment_id: UUID,
    request: ReasonRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> Assignment:
    return await engine.fail_assignment(assignment_id, request.reason)


@router.post("/assignments/{assignment_id}/locations", response_model=TrackingProgress)
async def ingest_location(
    assignment_id: UUID,
    request: LocationPingRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> TrackingProgress:
    return await engine.ingest_location(assignment_id, request.lat, request.lng, request.timestamp)


@router.post(
    "/assignments/{assignment_id}/exceptions",
    response_model=DeliveryException,
    status_code=status.HTTP_201_CREATED,
)
async def report_exception(
    assignment_id: UUID,
    request: ExceptionRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> DeliveryException:
    return await engine.report_exception(
        assignment_id, request.type, request.details, request.severity
    )


@router.get("/assignments/{assignment_id}/eta", response_model=ETAResult)
async def get_assignment_eta(
    assignment_id: UUID,
    engine: DispatchEngine = Depends(get_engine),
) -> ETAResult:
    return await engine.estimate_eta(assignment_id)


@router.get("/assignments/{assignment_id}/tracking", response_model=list[TrackingEvent])
async def get_assignment_tracking(
    assignment_id: UUID,
    engine: DispatchEngine = Depends(get_engine),
) -> list[TrackingEvent]:
    return await engine.tracking_history(assignment_id)


# Route endpoints


@router.post("/routes/optimize", response_model=RoutePlan)
async def optimize_route(
    request: RouteRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> RoutePlan:
    """Sequence waypoints with the nearest-neighbour heuristic."""
    origin = make_location(request.origin.lat, request.origin.lng) if request.origin else None
    return engine.optimize_route(_waypoints(request.waypoints), request.constraints, origin)


@router.post("/routes/eta", response_model=RouteETAResponse)
async def estimate_route_eta(
    request: RouteRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> RouteETAResponse:
    origin = make_location(request.origin.lat, request.origin.lng) if request.origin else None
    plan, eta = engine.estimate_route_eta(_waypoints(request.waypoints), request.constraints, origin)
    return RouteETAResponse(route=plan, eta=eta)


# Order endpoints


@router.get("/orders/{order_id}/eta", response_model=ETAResult)
async def get_order_eta(order_id: UUID, engine: DispatchEngine = Depends(get_engine)) -> ETAResult:
    """Customer-facing ETA for an order's active delivery."""
    return await engine.customer_eta(order_id)


# Batch endpoints


@router.post("/batches", response_model=BatchOutcome)
async def batch_orders(
    request: BatchRequest,
    engine: DispatchEngine = Depends(get_engine),
) -> JSONResponse:
    outcome = await engine.batch_orders(request.order_ids)
    code = (
        status.HTTP_201_CREATED
        if outcome.status == AssignmentOutcomeStatus.ASSIGNED
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=outcome.model_dump(mode="json"))


# Report endpoints


@router.get("/reports/deliveries", response_model=DeliveryReport)
async def delivery_report(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    driver_id: UUID | None = None,
    assignment_status: AssignmentStatus | None = Query(default=None, alias="status"),
    engine: DispatchEngine = Depends(get_engine),
) -> DeliveryReport:
    filters = ReportFilters(
        start_date=start_date,
        end_date=end_date,
        driver_id=driver_id,
        status=assignment_status,
    )
    return await engine.generate_report(filters)


# Admin endpoints


@router.get("/admin/metrics")
async def get_metrics(engine: DispatchEngine = Depends(get_engine)) -> dict[str, Any]:
    """Operation timings and live assignment counts."""
    return await engine.metrics()
